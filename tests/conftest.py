"""
测试公共工具
提供可注入失败的表格接口和假的补全服务
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

import openpyxl
import pytest

from excel_assistant.core.completion_service import CompletionService
from excel_assistant.core.workbook_port import WorkbookPort


class ScriptedPort(WorkbookPort):
    """
    可编排失败的工作簿接口

    failures: 方法名 -> 判断函数，返回 True 时该调用在 sync() 时抛出异常
    calls: 按顺序记录被调用的修改方法及参数
    """

    def __init__(self, workbook=None):
        super().__init__(workbook)
        self.calls: List[Tuple[str, tuple]] = []
        self.failures: Dict[str, Callable[..., bool]] = {}
        self.selection_error: Optional[Exception] = None

    def fail(self, method: str, when: Callable[..., bool] = lambda *args: True):
        self.failures[method] = when

    def _scripted_failure(self, method: str, *args) -> bool:
        self.calls.append((method, args))
        rule = self.failures.get(method)
        if rule is None or not rule(*args):
            return False

        def op():
            raise RuntimeError(f"forced {method} failure")
        self._enqueue(f"forced {method}", op)
        return True

    def calls_of(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    async def get_selection(self):
        if self.selection_error is not None:
            raise self.selection_error
        return await super().get_selection()

    def write_cell(self, target, value, number_format=None):
        if not self._scripted_failure("write_cell", target, value, number_format):
            super().write_cell(target, value, number_format)

    def write_range(self, sheet, top_left, values):
        if not self._scripted_failure("write_range", sheet, top_left, values):
            super().write_range(sheet, top_left, values)

    def format_as_table(self, sheet, address, name):
        if not self._scripted_failure("format_as_table", sheet, address, name):
            super().format_as_table(sheet, address, name)

    def create_worksheet(self, name=None, position=None):
        if self._scripted_failure("create_worksheet", name, position):
            return name or "Unnamed"
        return super().create_worksheet(name, position)

    def rename_worksheet(self, name, new_name):
        if not self._scripted_failure("rename_worksheet", name, new_name):
            super().rename_worksheet(name, new_name)

    def create_chart(self, kind, range_address, title=None, *args, **kwargs):
        if not self._scripted_failure("create_chart", kind, range_address, title):
            super().create_chart(kind, range_address, title, *args, **kwargs)

    def create_pivot(self, range_address, dest_sheet, row_fields, column_fields, value_fields, destination="A3"):
        if not self._scripted_failure("create_pivot", range_address, dest_sheet, row_fields, column_fields, value_fields):
            super().create_pivot(range_address, dest_sheet, row_fields, column_fields, value_fields, destination)


class FakeCompletionService(CompletionService):
    """记录调用并返回固定回复"""

    def __init__(self, reply: str = "Here is some help."):
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, history, query, data_context=None) -> str:
        self.calls.append({"history": list(history), "query": query, "data_context": data_context})
        return self.reply


def build_workbook(rows: List[List[Any]], title: str = "Data") -> openpyxl.Workbook:
    """从左上角 A1 开始写入数据"""
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = title
    for row in rows:
        sheet.append(row)
    return workbook


SALES_ROWS = [
    ["Region", "Product", "Amount"],
    ["East", "Apples", 10],
    ["West", "Apples", 20],
    ["East", "Pears", 5],
    ["East", "Apples", 7],
]


@pytest.fixture
def sales_port():
    """销售数据，选中 A1:C5"""
    port = ScriptedPort(build_workbook(SALES_ROWS))
    port.select("A1:C5")
    return port


@pytest.fixture
def fake_completion():
    return FakeCompletionService()
