"""
openpyxl 工作簿适配器
用内存中的 openpyxl 工作簿实现电子表格访问接口：
修改先进入队列，sync() 时按顺序提交
"""

from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, List, Optional, Sequence, Set, Tuple, Union

import openpyxl
import pandas as pd
from openpyxl.cell.cell import Cell
from openpyxl.chart import BarChart, LineChart, PieChart, Reference, ScatterChart, Series
from openpyxl.styles import Font
from openpyxl.utils import range_boundaries
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.table import Table, TableStyleInfo
from openpyxl.worksheet.worksheet import Worksheet

from excel_assistant.core.inference import detect_headers
from excel_assistant.core.spreadsheet_port import (
    CHART_ANCHOR,
    CellTarget,
    SpreadsheetPort,
    WorksheetError,
    qualify,
    split_address,
)
from excel_assistant.models import ChartKind, SelectionSnapshot


# Excel 工作表命名规则
MAX_SHEET_NAME_LENGTH = 31
INVALID_SHEET_CHARS = set('[]:*?/\\')

# 图表尺寸换算（厘米）
COLUMN_WIDTH_CM = 1.7
ROW_HEIGHT_CM = 0.5


class WorkbookPort(SpreadsheetPort):
    """
    基于 openpyxl 的电子表格访问实现

    核心功能：
    1. 维护当前选区（工作表 + 区域）
    2. 登记修改操作，在 sync() 时统一提交
    3. 用 openpyxl 原生图表、pandas 透视结果和表格样式实现高级操作
    """

    def __init__(self, workbook: Optional[Workbook] = None):
        """
        初始化适配器

        Args:
            workbook: openpyxl 工作簿，不提供则新建空工作簿
        """
        self.workbook = workbook if workbook is not None else openpyxl.Workbook()
        self._selection: Optional[Tuple[str, str]] = None
        self._pending: List[Tuple[str, Callable[[], None]]] = []
        self._pending_sheet_names: Set[str] = set()

    @classmethod
    def load(cls, file_path: Union[str, Path, BinaryIO]) -> "WorkbookPort":
        """从 .xlsx 文件（路径或二进制流）加载"""
        return cls(openpyxl.load_workbook(file_path))

    def save(self, file_path: str | Path) -> Path:
        """保存工作簿（只包含已同步的修改）"""
        file_path = Path(file_path)
        self.workbook.save(file_path)
        return file_path

    # ============ 选区 ============

    def select(self, address: str):
        """设置当前选区，地址可带工作表名"""
        sheet_name, ref = split_address(address)
        sheet = self._sheet(sheet_name)
        range_boundaries(ref)  # 校验地址格式
        self.workbook.active = sheet
        self._selection = (sheet.title, ref)

    async def get_selection(self) -> Optional[SelectionSnapshot]:
        if self._selection is None:
            return None

        sheet_name, ref = self._selection
        sheet = self._sheet(sheet_name)
        min_col, min_row, max_col, max_row = self._bounds(ref)
        values = self._read_values(sheet, min_row, min_col, max_row, max_col)

        return SelectionSnapshot(
            range_address=qualify(sheet.title, ref),
            values=values,
            row_count=max_row - min_row + 1,
            column_count=max_col - min_col + 1,
            row_index=min_row - 1,
            column_index=min_col - 1,
            has_headers=detect_headers(values)
        )

    # ============ 读取 ============

    async def read_range(self, address: str) -> List[List[Any]]:
        sheet_name, ref = split_address(address)
        sheet = self._sheet(sheet_name)
        min_col, min_row, max_col, max_row = self._bounds(ref)
        return self._read_values(sheet, min_row, min_col, max_row, max_col)

    async def read_cell(self, target: CellTarget) -> Any:
        return next(self._cells(target)).value

    # ============ 写入（登记，sync 时提交） ============

    def write_cell(self, target: CellTarget, value: Any, number_format: Optional[str] = None) -> None:
        def op():
            for cell in self._cells(target):
                cell.value = value
                if number_format:
                    cell.number_format = number_format
        self._enqueue(f"write_cell {target}", op)

    def write_formula(self, target: CellTarget, expr: str) -> None:
        if not expr.startswith("="):
            raise ValueError(f"公式必须以 '=' 开头: {expr}")

        def op():
            for cell in self._cells(target):
                cell.value = expr
        self._enqueue(f"write_formula {target}", op)

    def write_range(self, sheet: str, top_left: str, values: Sequence[Sequence[Any]]) -> None:
        rows = [list(row) for row in values]

        def op():
            ws = self._sheet(sheet)
            min_col, min_row, _, _ = self._bounds(top_left)
            for r_idx, row in enumerate(rows):
                for c_idx, value in enumerate(row):
                    ws.cell(row=min_row + r_idx, column=min_col + c_idx, value=value)
        self._enqueue(f"write_range {sheet}!{top_left}", op)

    def set_font(self, sheet: str, address: str, bold: Optional[bool] = None, size: Optional[float] = None) -> None:
        def op():
            for cell in self._cells(qualify(sheet, address)):
                font = cell.font
                cell.font = Font(
                    name=font.name,
                    size=size if size is not None else font.size,
                    bold=bold if bold is not None else font.bold,
                    italic=font.italic,
                    color=font.color
                )
        self._enqueue(f"set_font {sheet}!{address}", op)

    def format_as_table(self, sheet: str, address: str, name: str) -> None:
        def op():
            ws = self._sheet(sheet)
            ref = address.replace("$", "")
            # 表格区域不能重叠，否则 Excel 认为文件损坏
            for existing in [t for t in ws.tables.values() if self._ranges_overlap(t.ref, ref)]:
                del ws.tables[existing.displayName]
            table = Table(displayName=self._unique_table_name(name), ref=ref)
            table.tableStyleInfo = TableStyleInfo(name="TableStyleMedium2", showRowStripes=True)
            ws.add_table(table)
        self._enqueue(f"format_as_table {sheet}!{address}", op)

    # ============ 工作表 ============

    async def list_worksheets(self) -> List[str]:
        return list(self.workbook.sheetnames)

    def create_worksheet(self, name: Optional[str] = None, position: Optional[int] = None) -> str:
        if name is None:
            name = self._next_default_sheet_name()
        self._pending_sheet_names.add(name.lower())

        def op():
            self._validate_sheet_name(name)
            self.workbook.create_sheet(title=name, index=position)
        self._enqueue(f"create_worksheet {name}", op)
        return name

    def rename_worksheet(self, name: str, new_name: str) -> None:
        def op():
            sheet = self._sheet(name)
            if new_name.lower() != sheet.title.lower():
                self._validate_sheet_name(new_name)
            sheet.title = new_name
        self._enqueue(f"rename_worksheet {name} -> {new_name}", op)

    def activate_worksheet(self, name: str) -> None:
        def op():
            sheet = self._sheet(name)
            self.workbook.active = sheet
            self._selection = (sheet.title, "A1")
        self._enqueue(f"activate_worksheet {name}", op)

    # ============ 图表与透视表 ============

    def create_chart(
        self,
        kind: ChartKind,
        range_address: str,
        title: Optional[str] = None,
        anchor: Tuple[str, str] = CHART_ANCHOR
    ) -> None:
        def op():
            sheet_name, ref = split_address(range_address)
            ws = self._sheet(sheet_name)
            min_col, min_row, max_col, max_row = self._bounds(ref)
            values = self._read_values(ws, min_row, min_col, max_row, max_col)
            if all(v is None or v == "" for row in values for v in row):
                raise ValueError(f"区域 {range_address} 没有可绘制的数据")

            chart = self._build_chart(ws, kind, min_row, min_col, max_row, max_col, detect_headers(values))
            if title:
                chart.title = title
            self._size_chart(chart, anchor)
            ws.add_chart(chart, anchor[0])
        self._enqueue(f"create_chart {range_address}", op)

    def create_pivot(
        self,
        range_address: str,
        dest_sheet: str,
        row_fields: Sequence[int],
        column_fields: Sequence[int],
        value_fields: Sequence[int],
        destination: str = "A3"
    ) -> None:
        row_fields, column_fields, value_fields = list(row_fields), list(column_fields), list(value_fields)

        def op():
            sheet_name, ref = split_address(range_address)
            source = self._sheet(sheet_name)
            min_col, min_row, max_col, max_row = self._bounds(ref)
            df = self._values_to_dataframe(self._read_values(source, min_row, min_col, max_row, max_col))
            pivot_df = self._pivot(df, row_fields, column_fields, value_fields)
            self._dataframe_to_sheet(pivot_df, self._sheet(dest_sheet), destination)
        self._enqueue(f"create_pivot {range_address} -> {dest_sheet}", op)

    # ============ 同步 ============

    async def sync(self) -> None:
        pending, self._pending = self._pending, []
        self._pending_sheet_names.clear()
        for _description, op in pending:
            op()

    # ============ 内部工具 ============

    def _enqueue(self, description: str, op: Callable[[], None]):
        self._pending.append((description, op))

    def _sheet(self, name: Optional[str] = None) -> Worksheet:
        if name is None:
            return self.workbook.active
        for sheet in self.workbook.worksheets:
            if sheet.title.lower() == name.lower():
                return sheet
        raise WorksheetError(f"工作表不存在: {name}")

    @staticmethod
    def _bounds(ref: str) -> Tuple[int, int, int, int]:
        min_col, min_row, max_col, max_row = range_boundaries(ref.replace("$", ""))
        if min_col is None or min_row is None:
            raise ValueError(f"不支持整行/整列地址: {ref}")
        return min_col, min_row, max_col or min_col, max_row or min_row

    @staticmethod
    def _read_values(ws: Worksheet, min_row: int, min_col: int, max_row: int, max_col: int) -> List[List[Any]]:
        return [
            list(row)
            for row in ws.iter_rows(
                min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col, values_only=True
            )
        ]

    def _cells(self, target: CellTarget) -> Iterator[Cell]:
        """解析目标为单元格序列：元组为活动工作表上的索引，字符串为 A1 地址"""
        if isinstance(target, tuple):
            row, column = target
            yield self.workbook.active.cell(row=row + 1, column=column + 1)
            return

        sheet_name, ref = split_address(target)
        ws = self._sheet(sheet_name)
        min_col, min_row, max_col, max_row = self._bounds(ref)
        for row in ws.iter_rows(min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col):
            yield from row

    def _validate_sheet_name(self, name: str):
        if not name or not name.strip():
            raise WorksheetError("工作表名称不能为空")
        if len(name) > MAX_SHEET_NAME_LENGTH:
            raise WorksheetError(f"工作表名称超过 {MAX_SHEET_NAME_LENGTH} 个字符: {name}")
        if INVALID_SHEET_CHARS & set(name):
            raise WorksheetError(f"工作表名称包含非法字符: {name}")
        if name.lower() in (s.lower() for s in self.workbook.sheetnames):
            raise WorksheetError(f"工作表已存在: {name}")

    def _next_default_sheet_name(self) -> str:
        taken = {s.lower() for s in self.workbook.sheetnames} | self._pending_sheet_names
        index = len(self.workbook.sheetnames) + 1
        while f"sheet{index}" in taken:
            index += 1
        return f"Sheet{index}"

    def _unique_table_name(self, name: str) -> str:
        taken = {t.lower() for ws in self.workbook.worksheets for t in ws.tables.keys()}
        candidate, suffix = name, 1
        while candidate.lower() in taken:
            suffix += 1
            candidate = f"{name}{suffix}"
        return candidate

    @classmethod
    def _ranges_overlap(cls, first: str, second: str) -> bool:
        a_min_col, a_min_row, a_max_col, a_max_row = cls._bounds(first)
        b_min_col, b_min_row, b_max_col, b_max_row = cls._bounds(second)
        return not (
            a_max_col < b_min_col or b_max_col < a_min_col
            or a_max_row < b_min_row or b_max_row < a_min_row
        )

    @staticmethod
    def _build_chart(ws: Worksheet, kind: ChartKind, min_row: int, min_col: int,
                     max_row: int, max_col: int, has_headers: bool):
        """按图表类型构建 openpyxl 图表：多列时首列作为分类/X 轴"""
        first_data_col = min_col + 1 if max_col > min_col else min_col
        categories_row = min_row + 1 if has_headers else min_row

        if kind == ChartKind.XY_SCATTER:
            chart = ScatterChart()
            x_values = None
            if max_col > min_col:
                x_values = Reference(ws, min_col=min_col, min_row=categories_row, max_row=max_row)
            for col in range(first_data_col, max_col + 1):
                y_values = Reference(ws, min_col=col, min_row=min_row, max_row=max_row)
                chart.series.append(Series(y_values, x_values, title_from_data=has_headers))
            return chart

        if kind == ChartKind.PIE:
            chart = PieChart()
        elif kind == ChartKind.LINE:
            chart = LineChart()
        else:
            chart = BarChart()
            chart.type = "bar" if kind == ChartKind.BAR_CLUSTERED else "col"
            chart.grouping = "clustered"

        data = Reference(ws, min_col=first_data_col, min_row=min_row, max_col=max_col, max_row=max_row)
        chart.add_data(data, titles_from_data=has_headers)
        if max_col > min_col:
            chart.set_categories(Reference(ws, min_col=min_col, min_row=categories_row, max_row=max_row))
        return chart

    @staticmethod
    def _size_chart(chart, anchor: Tuple[str, str]):
        start_col, start_row, _, _ = range_boundaries(anchor[0])
        end_col, end_row, _, _ = range_boundaries(anchor[1])
        chart.width = (end_col - start_col + 1) * COLUMN_WIDTH_CM
        chart.height = (end_row - start_row + 1) * ROW_HEIGHT_CM

    @staticmethod
    def _values_to_dataframe(values: List[List[Any]]) -> pd.DataFrame:
        """将区域转换为 DataFrame，处理重复列名和换行符"""
        if not values:
            return pd.DataFrame()

        columns = [
            str(c).replace('\n', '').replace('\r', '') if c is not None else f"Column{i + 1}"
            for i, c in enumerate(values[0])
        ]

        # 处理重复的列名：给重复的列名添加后缀
        seen = {}
        unique_columns = []
        for col in columns:
            if col in seen:
                seen[col] += 1
                unique_columns.append(f"{col}_{seen[col]}")
            else:
                seen[col] = 0
                unique_columns.append(col)

        return pd.DataFrame(values[1:], columns=unique_columns)

    @staticmethod
    def _pivot(df: pd.DataFrame, row_fields: List[int], column_fields: List[int],
               value_fields: List[int]) -> pd.DataFrame:
        columns = list(df.columns)
        for field in row_fields + column_fields + value_fields:
            if field < 0 or field >= len(columns):
                raise IndexError(f"透视字段超出范围: {field}")
        if not value_fields:
            raise ValueError("透视表至少需要一个值字段")

        index = [columns[i] for i in row_fields]
        pivot_columns = [columns[i] for i in column_fields]
        value_columns = [columns[i] for i in value_fields]

        df = df.copy()
        for col in value_columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")

        # 只有值字段：输出一行总计
        if not index and not pivot_columns:
            return pd.DataFrame([[df[col].sum() for col in value_columns]], columns=value_columns)

        pivot_df = pd.pivot_table(
            df,
            index=index or None,
            columns=pivot_columns or None,
            values=value_columns,
            aggfunc="sum"
        )
        pivot_df = pivot_df.reset_index()

        if isinstance(pivot_df.columns, pd.MultiIndex):
            pivot_df.columns = [
                " - ".join(str(part) for part in col if part != "") for col in pivot_df.columns
            ]
        return pivot_df

    @staticmethod
    def _dataframe_to_sheet(df: pd.DataFrame, ws: Worksheet, top_left: str):
        """将 DataFrame 写入工作表，正确处理 NaN 和 numpy 类型"""
        import numpy as np

        start_col, start_row, _, _ = range_boundaries(top_left)

        for c_idx, col_name in enumerate(df.columns):
            ws.cell(row=start_row, column=start_col + c_idx, value=str(col_name))

        for r_idx, row in enumerate(df.itertuples(index=False), start=1):
            for c_idx, value in enumerate(row):
                if isinstance(value, (np.integer, np.floating)):
                    value = value.item()
                if value is not None and not isinstance(value, str) and pd.isna(value):
                    value = None
                ws.cell(row=start_row + r_idx, column=start_col + c_idx, value=value)
