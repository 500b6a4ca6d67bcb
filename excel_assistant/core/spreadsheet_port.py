"""
电子表格访问接口
定义核心逻辑依赖的表格操作（读写单元格、工作表、图表、透视表），
所有修改在 sync() 之后才保证可见
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence, Tuple, Union

from openpyxl.utils import get_column_letter, range_boundaries

from excel_assistant.models import ChartKind, SelectionSnapshot


# 单元格目标：A1 地址，或活动工作表上的 (行, 列) 索引(从0开始)
CellTarget = Union[str, Tuple[int, int]]

# 图表固定放置区域
CHART_ANCHOR = ("A15", "H30")


class WorksheetError(Exception):
    """工作表操作失败（重名、非法名称、不存在等）"""


def split_address(address: str) -> Tuple[Optional[str], str]:
    """拆分 'Sheet1!A1:C4' -> ('Sheet1', 'A1:C4')"""
    if "!" in address:
        sheet, ref = address.rsplit("!", 1)
        sheet = sheet.strip()
        if sheet.startswith("'") and sheet.endswith("'"):
            sheet = sheet[1:-1].replace("''", "'")
        return sheet, ref.replace("$", "")
    return None, address.replace("$", "")


def parse_range(address: str) -> Tuple[Optional[str], int, int, int, int]:
    """
    解析地址

    Returns:
        (工作表名, 起始行, 起始列, 行数, 列数)，行列均从0开始
    """
    sheet, ref = split_address(address)
    min_col, min_row, max_col, max_row = range_boundaries(ref)
    if max_col is None:
        max_col = min_col
    if max_row is None:
        max_row = min_row
    return sheet, min_row - 1, min_col - 1, max_row - min_row + 1, max_col - min_col + 1


def cell_address(row: int, column: int) -> str:
    """(行, 列) 索引(从0开始) -> A1 地址"""
    return f"{get_column_letter(column + 1)}{row + 1}"


def range_address(row: int, column: int, row_count: int, column_count: int) -> str:
    """区域索引 -> 'A1:C4'"""
    start = cell_address(row, column)
    end = cell_address(row + row_count - 1, column + column_count - 1)
    return start if start == end else f"{start}:{end}"


def qualify(sheet: str, ref: str) -> str:
    """拼接带工作表名的地址"""
    if any(ch in sheet for ch in " -'!") or not sheet.isascii():
        sheet = "'" + sheet.replace("'", "''") + "'"
    return f"{sheet}!{ref}"


class SpreadsheetPort(ABC):
    """
    电子表格访问接口

    修改类方法只登记操作，调用 sync() 才真正生效；sync() 失败时
    本批次剩余的操作全部丢弃。读取类方法只能看到已同步的内容。
    """

    @abstractmethod
    async def get_selection(self) -> Optional[SelectionSnapshot]:
        """读取当前选区，没有选区时返回 None"""

    @abstractmethod
    async def read_range(self, address: str) -> List[List[Any]]:
        """读取区域的值"""

    @abstractmethod
    async def read_cell(self, target: CellTarget) -> Any:
        """读取单个单元格的值"""

    @abstractmethod
    def write_cell(self, target: CellTarget, value: Any, number_format: Optional[str] = None) -> None:
        """写入单元格值（可附带数字格式）"""

    @abstractmethod
    def write_formula(self, target: CellTarget, expr: str) -> None:
        """写入公式，目标为区域时每个单元格都写入同一公式"""

    @abstractmethod
    def write_range(self, sheet: str, top_left: str, values: Sequence[Sequence[Any]]) -> None:
        """从左上角开始写入一块值"""

    @abstractmethod
    def set_font(self, sheet: str, address: str, bold: Optional[bool] = None, size: Optional[float] = None) -> None:
        """设置字体"""

    @abstractmethod
    def format_as_table(self, sheet: str, address: str, name: str) -> None:
        """将区域格式化为表格（首行为表头）"""

    @abstractmethod
    async def list_worksheets(self) -> List[str]:
        """列出所有工作表名称"""

    @abstractmethod
    def create_worksheet(self, name: Optional[str] = None, position: Optional[int] = None) -> str:
        """
        新建工作表

        Returns:
            str: 工作表名称（未指定名称时为自动生成的名称）
        """

    @abstractmethod
    def rename_worksheet(self, name: str, new_name: str) -> None:
        """重命名工作表"""

    @abstractmethod
    def activate_worksheet(self, name: str) -> None:
        """激活工作表"""

    @abstractmethod
    def create_chart(
        self,
        kind: ChartKind,
        range_address: str,
        title: Optional[str] = None,
        anchor: Tuple[str, str] = CHART_ANCHOR
    ) -> None:
        """基于区域在活动工作表上创建图表"""

    @abstractmethod
    def create_pivot(
        self,
        range_address: str,
        dest_sheet: str,
        row_fields: Sequence[int],
        column_fields: Sequence[int],
        value_fields: Sequence[int],
        destination: str = "A3"
    ) -> None:
        """创建透视表，字段为源区域的列索引，值字段按求和汇总"""

    @abstractmethod
    async def sync(self) -> None:
        """提交所有已登记的修改"""
