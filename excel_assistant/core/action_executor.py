"""
操作执行器模块
负责把识别出的操作请求转换为电子表格访问接口的调用，
工作表创建和透视表创建带有逐级降级的备选策略
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from openpyxl.utils import get_column_letter

from excel_assistant.core.aggregation import (
    format_number,
    is_numeric_coercible,
    sum_column,
    sum_columns,
    sum_grid,
)
from excel_assistant.core.column_resolver import resolve_column
from excel_assistant.core.inference import analyze_columns, classify_columns
from excel_assistant.core.spreadsheet_port import (
    SpreadsheetPort,
    cell_address,
    parse_range,
    qualify,
    range_address,
    split_address,
)
from excel_assistant.models import (
    ActionOutcome,
    ActionType,
    AmountCostSumRequest,
    ChartRequest,
    ColumnAnalysis,
    ColumnSumRequest,
    ColumnType,
    FormulaRequest,
    NextRowSumRequest,
    PivotTableRequest,
    SelectionSnapshot,
    SumRequest,
)


# 求和结果统一使用两位小数格式
SUM_NUMBER_FORMAT = "0.00"

# 自动选择透视字段的上限
MAX_AUTO_ROW_FIELDS = 2
MAX_AUTO_VALUE_FIELDS = 3

GENERIC_FAILURE_MESSAGE = "Sorry, I couldn't complete that action on your spreadsheet."


class ExecutionError(Exception):
    """
    操作执行错误

    提供更详细的错误信息和解决建议
    """
    def __init__(self, message: str, suggestion: str = None, operation_type: str = None):
        self.message = message
        self.suggestion = suggestion
        self.operation_type = operation_type

        # 构建完整的错误消息
        full_message = f"❌ {message}"
        if operation_type:
            full_message = f"[{operation_type}] {full_message}"
        if suggestion:
            full_message += f"\n💡 Suggestion: {suggestion}"

        super().__init__(full_message)

    def __str__(self):
        return self.args[0]


class ActionExecutor:
    """
    操作执行器

    核心功能：
    1. 按操作类型分发到对应的执行方法
    2. 求和类操作读取一次选区，结果以数值（而非公式）写回
    3. 工作表/透视表创建按固定顺序尝试备选策略
    4. 任何接口异常都在这里转换为失败结果，不向上抛出
    """

    def __init__(
        self,
        port: SpreadsheetPort,
        pivot_sheet_name: str = "PivotTable",
        simple_pivot_sheet_name: str = "PivotData",
        chart_title: str = "Chart from selected data",
        clock: Callable[[], float] = time.time
    ):
        """
        初始化执行器

        Args:
            port: 电子表格访问接口
            pivot_sheet_name: 透视表默认目标工作表
            simple_pivot_sheet_name: 简易透视表目标工作表
            chart_title: 默认图表标题
            clock: 时间源（生成唯一工作表名）
        """
        self.port = port
        self.pivot_sheet_name = pivot_sheet_name
        self.simple_pivot_sheet_name = simple_pivot_sheet_name
        self.chart_title = chart_title
        self._clock = clock

        self.operation_log: List[str] = []
        self.operation_history: List[Dict[str, Any]] = []

    def _log(self, message: str):
        """记录操作日志（同时打印到控制台）"""
        self.operation_log.append(message)
        print(f"    {message}")

    async def execute(
        self,
        request,
        selection: Optional[SelectionSnapshot] = None
    ) -> ActionOutcome:
        """
        执行单个操作

        Args:
            request: 操作请求
            selection: 本轮已读取的选区，不提供则重新读取一次

        Returns:
            ActionOutcome: 执行结果（从不抛出异常）
        """
        operation_record = {
            "type": request.type.value,
            "timestamp": datetime.now().isoformat(),
        }

        executor_map = {
            ActionType.SUM: self._execute_sum,
            ActionType.COLUMN_SUM: self._execute_column_sum,
            ActionType.PIVOT_TABLE: self._execute_pivot,
            ActionType.CHART: self._execute_chart,
            ActionType.FORMULA: self._execute_formula,
            ActionType.AMOUNT_COST_SUM: self._execute_amount_cost_sum,
            ActionType.NEXT_ROW_SUM: self._execute_next_row_sum,
        }

        try:
            self._log(f"执行: {request.type.value}")
            executor = executor_map.get(request.type)
            if executor is None:
                raise ExecutionError(f"Unsupported action: {request.type}")
            outcome = await executor(request, selection)
            operation_record["status"] = "success" if outcome.succeeded else "failed"
            self._log(f"  {'✓ 完成' if outcome.succeeded else '✗ 失败'}")
        except ExecutionError as e:
            self._log(f"  ✗ 失败: {e.message}")
            operation_record["status"] = "failed"
            operation_record["error"] = e.message
            outcome = ActionOutcome(succeeded=False, user_message=str(e))
        except Exception as e:
            self._log(f"  ✗ 表格接口异常: {type(e).__name__}: {e}")
            operation_record["status"] = "failed"
            operation_record["error"] = str(e)
            outcome = ActionOutcome(succeeded=False, user_message=GENERIC_FAILURE_MESSAGE)
        finally:
            self.operation_history.append(operation_record)

        return outcome

    async def _require_selection(
        self,
        selection: Optional[SelectionSnapshot],
        operation_type: str,
        min_rows: int = 1
    ) -> SelectionSnapshot:
        """获取选区并校验行数"""
        if selection is None:
            selection = await self.port.get_selection()

        if selection is None or selection.is_empty:
            raise ExecutionError(
                "No data is selected",
                suggestion="Select a range of cells first",
                operation_type=operation_type
            )
        if selection.row_count < min_rows or len(selection.values) < min_rows:
            raise ExecutionError(
                "Not enough data (need a header row and at least one data row)",
                suggestion="Select the header row together with the data below it",
                operation_type=operation_type
            )
        return selection

    @staticmethod
    def _below_selection(selection: SelectionSnapshot, column_offset: int = 0) -> str:
        """选区正下方一行、指定列偏移处的单元格地址"""
        sheet, _ = split_address(selection.range_address)
        address = cell_address(
            selection.row_index + selection.row_count,
            selection.column_index + column_offset
        )
        return qualify(sheet, address) if sheet else address

    # ============ 求和 ============

    async def _execute_sum(self, request: SumRequest, selection: Optional[SelectionSnapshot]) -> ActionOutcome:
        """整个选区求和，写在选区下方（或指定单元格）"""
        selection = await self._require_selection(selection, "SUM")

        total = sum_grid(selection.values)
        target = request.target_cell or self._below_selection(selection)
        self._log(f"  选区 {selection.range_address} 求和: {total} -> {target}")

        self.port.write_cell(target, total, SUM_NUMBER_FORMAT)
        await self.port.sync()

        return ActionOutcome(
            succeeded=True,
            user_message=f"Sum {format_number(total)} written to {target}.",
            results={"sum": total}
        )

    async def _execute_next_row_sum(
        self,
        request: NextRowSumRequest,
        selection: Optional[SelectionSnapshot]
    ) -> ActionOutcome:
        """逐列求和，写入选区下一行（和为 0 的列不写）"""
        selection = await self._require_selection(selection, "NEXT_ROW_SUM")

        column_sums = sum_columns(selection.values)
        self._log(f"  逐列求和: {column_sums}")

        results = {}
        for col, total in enumerate(column_sums):
            if total == 0:
                continue
            self.port.write_cell(self._below_selection(selection, col), total, SUM_NUMBER_FORMAT)
            results[self._column_label(selection, col)] = total

        await self.port.sync()

        return ActionOutcome(
            succeeded=True,
            user_message="Column sums written to the row below the selection.",
            results=results
        )

    async def _execute_column_sum(
        self,
        request: ColumnSumRequest,
        selection: Optional[SelectionSnapshot]
    ) -> ActionOutcome:
        """按列名求和，每列结果写在该列下方，每写一列同步一次"""
        selection = await self._require_selection(selection, "COLUMN_SUM", min_rows=2)
        headers = selection.headers

        results = {}
        for name in request.column_names:
            col = resolve_column(headers, name)
            if col is None:
                self._log(f"  ✗ 找不到列 '{name}'，已跳过")
                continue

            total = sum_column(selection.values, col)
            target = self._below_selection(selection, col)
            self._log(f"  列 '{name}' (第 {col} 列) 求和: {total} -> {target}")

            self.port.write_cell(target, total, SUM_NUMBER_FORMAT)
            await self.port.sync()
            results[name] = total

        if not results:
            available = [str(h) for h in headers if h is not None][:10]
            raise ExecutionError(
                f"None of the columns {request.column_names} were found",
                suggestion=f"Available columns: {', '.join(available)}",
                operation_type="COLUMN_SUM"
            )

        summary = ", ".join(f"{name} = {format_number(total)}" for name, total in results.items())
        return ActionOutcome(succeeded=True, user_message=f"Column sums: {summary}.", results=results)

    async def _execute_amount_cost_sum(
        self,
        request: AmountCostSumRequest,
        selection: Optional[SelectionSnapshot]
    ) -> ActionOutcome:
        """amount/cost 两列分别求和，逐个单元格写入选区下一行"""
        selection = await self._require_selection(selection, "AMOUNT_COST_SUM", min_rows=2)
        headers = selection.headers

        results = {}
        written = False
        for name in request.column_names:
            col = resolve_column(headers, name)
            if col is None:
                self._log(f"  ✗ 找不到列 '{name}'，已跳过")
                results[name] = 0.0
                continue

            total = sum_column(selection.values, col)
            results[name] = total
            if await self.write_value_to_cell(total, self._below_selection(selection, col)):
                written = True

        target_row = selection.row_index + selection.row_count + 1
        summary = ", ".join(f"{name.capitalize()} = {format_number(total)}" for name, total in results.items())
        return ActionOutcome(
            succeeded=written,
            user_message=f"Sums: {summary} (row {target_row})." if written else GENERIC_FAILURE_MESSAGE,
            results=results
        )

    @staticmethod
    def _column_label(selection: SelectionSnapshot, col: int) -> str:
        headers = selection.headers
        if selection.has_headers and col < len(headers) and headers[col] is not None:
            return str(headers[col])
        return get_column_letter(selection.column_index + col + 1)

    # ============ 图表与公式 ============

    async def _execute_chart(self, request: ChartRequest, selection: Optional[SelectionSnapshot]) -> ActionOutcome:
        """在活动工作表的固定区域创建图表"""
        title = request.title or self.chart_title
        self.port.create_chart(request.chart_kind, request.data_range, title)
        await self.port.sync()
        self._log(f"  图表已创建: {request.chart_kind.friendly_name} ({request.data_range})")
        return ActionOutcome(
            succeeded=True,
            user_message=f"Created a {request.chart_kind.friendly_name} chart from {request.data_range}."
        )

    async def _execute_formula(self, request: FormulaRequest, selection: Optional[SelectionSnapshot]) -> ActionOutcome:
        """应用公式，缺少 '=' 时自动补上；未指定目标时写入选区左上角单元格"""
        formula = request.formula.strip()
        if not formula.startswith("="):
            formula = "=" + formula

        target = request.target_cell
        if not target:
            selection = await self._require_selection(selection, "FORMULA")
            sheet, row, column, _, _ = parse_range(selection.range_address)
            target = qualify(sheet, cell_address(row, column)) if sheet else cell_address(row, column)

        self.port.write_formula(target, formula)
        await self.port.sync()
        self._log(f"  公式 {formula} 已写入 {target}")
        return ActionOutcome(succeeded=True, user_message=f"Applied {formula} to {target}.")

    # ============ 透视表 ============

    async def _execute_pivot(
        self,
        request: PivotTableRequest,
        selection: Optional[SelectionSnapshot]
    ) -> ActionOutcome:
        """带字段或目标表时走完整透视流程，否则走带简易备选的流程"""
        if request.has_fields or request.destination_sheet:
            succeeded = await self.create_pivot_table(
                request.data_range,
                request.destination_sheet or self.pivot_sheet_name,
                request.row_fields,
                request.column_fields,
                request.value_fields
            )
        else:
            succeeded = await self.create_sample_pivot_table(request.data_range)

        return ActionOutcome(
            succeeded=succeeded,
            user_message="Pivot table created." if succeeded else GENERIC_FAILURE_MESSAGE
        )

    async def create_worksheet(self, name: str) -> Optional[str]:
        """
        创建（或复用）工作表并激活

        依次尝试：
        1. 同名工作表已存在则复用，否则用原名新建
        2. 原名加时间戳后缀新建
        3. 不指定名称，插入到最前面

        Returns:
            str | None: 工作表名称，全部失败返回 None
        """
        try:
            existing = await self.port.list_worksheets()
        except Exception as e:
            self._log(f"  ✗ 读取工作表列表失败: {e}")
            return None

        def requested_name() -> str:
            for sheet in existing:
                if sheet.lower() == name.lower():
                    self._log(f"  工作表 '{sheet}' 已存在，直接使用")
                    return sheet
            return self.port.create_worksheet(name)

        def unique_name() -> str:
            return self.port.create_worksheet(f"{name}_{int(self._clock() * 1000)}")

        def insert_at_front() -> str:
            return self.port.create_worksheet(None, position=0)

        strategies: List[Tuple[str, Callable[[], str]]] = [
            ("requested_name", requested_name),
            ("unique_name", unique_name),
            ("insert_at_front", insert_at_front),
        ]

        for label, strategy in strategies:
            try:
                sheet_name = strategy()
                self.port.activate_worksheet(sheet_name)
                await self.port.sync()
                self._log(f"  ✓ 工作表已就绪: '{sheet_name}' (策略 {label})")
                return sheet_name
            except Exception as e:
                self._log(f"  ✗ 工作表创建策略 {label} 失败: {e}")

        self._log("  ✗ 所有工作表创建策略均失败")
        return None

    def _pivot_fields(
        self,
        headers: Sequence[Any],
        source: List[List[Any]],
        row_fields: Optional[List[str]],
        column_fields: Optional[List[str]],
        value_fields: Optional[List[str]]
    ) -> Tuple[List[int], List[int], List[int]]:
        """确定透视字段：指定了字段名则逐个解析，否则按列类型自动选择"""
        if not (row_fields or column_fields or value_fields):
            classifications = classify_columns(source)
            rows = [c.index for c in classifications if c.column_type == ColumnType.TEXT][:MAX_AUTO_ROW_FIELDS]
            values = [c.index for c in classifications if c.column_type == ColumnType.NUMERIC][:MAX_AUTO_VALUE_FIELDS]
            self._log(f"  自动识别行字段: {[headers[i] for i in rows]}")
            self._log(f"  自动识别值字段: {[headers[i] for i in values]}")
            return rows, [], values

        def resolve_all(names: Optional[List[str]], label: str) -> List[int]:
            indices = []
            for field in names or []:
                col = resolve_column(headers, field)
                if col is None:
                    self._log(f"  ✗ 找不到{label} '{field}'，已跳过")
                    continue
                indices.append(col)
            return indices

        return (
            resolve_all(row_fields, "行字段"),
            resolve_all(column_fields, "列字段"),
            resolve_all(value_fields, "值字段"),
        )

    async def create_pivot_table(
        self,
        data_range: str,
        destination_sheet: Optional[str] = None,
        row_fields: Optional[List[str]] = None,
        column_fields: Optional[List[str]] = None,
        value_fields: Optional[List[str]] = None
    ) -> bool:
        """
        创建透视表

        先创建目标工作表，再构建透视表；构建失败时把源数据原样复制到
        目标工作表并格式化为表格。已创建的工作表不会回滚。

        Returns:
            bool: 透视表或备选表格创建成功
        """
        destination_sheet = destination_sheet or self.pivot_sheet_name
        self._log(f"开始创建透视表: {data_range} -> {destination_sheet}")

        try:
            source = await self.port.read_range(data_range)
        except Exception as e:
            self._log(f"  ✗ 读取源数据失败: {e}")
            return False

        sheet = await self.create_worksheet(destination_sheet)
        if sheet is None:
            self._log("  ✗ 无法创建透视表工作表")
            return False

        try:
            headers = source[0]
            rows, columns, values = self._pivot_fields(headers, source, row_fields, column_fields, value_fields)
            self.port.create_pivot(data_range, sheet, rows, columns, values, destination="A3")
            await self.port.sync()
            self._log(f"  ✓ 透视表已创建: {sheet}")
            return True
        except Exception as pivot_error:
            self._log(f"  ✗ 透视表创建失败: {pivot_error}，改为复制数据并格式化为表格")

        try:
            row_count = len(source)
            column_count = max(len(row) for row in source)
            self.port.write_range(sheet, "A1", source)
            self.port.format_as_table(sheet, range_address(0, 0, row_count, column_count), "DataTable")
            await self.port.sync()
            self._log(f"  ✓ 已在 '{sheet}' 创建数据表格")
            return True
        except Exception as table_error:
            self._log(f"  ✗ 备选表格创建失败: {table_error}")
            return False

    async def create_simple_pivot_table(self, data_range: str) -> bool:
        """简易备选：新建工作表，写入加粗标题并复制源数据"""
        self._log(f"开始创建简易透视表: {data_range}")

        try:
            data = await self.port.read_range(data_range)
        except Exception as e:
            self._log(f"  ✗ 读取源数据失败: {e}")
            return False
        if not data:
            self._log("  ✗ 选区中没有数据")
            return False

        try:
            created = self.port.create_worksheet()
            await self.port.sync()
            self.port.rename_worksheet(created, self.simple_pivot_sheet_name)
            await self.port.sync()
            sheet = self.simple_pivot_sheet_name
        except Exception as e:
            self._log(f"  ✗ 新建工作表失败: {e}")
            return False

        try:
            self.port.write_cell(qualify(sheet, "A1"), "Data Summary")
            self.port.set_font(sheet, "A1", bold=True, size=14)
            self.port.write_range(sheet, "A2", data)
            self.port.activate_worksheet(sheet)
            await self.port.sync()
            self._log(f"  ✓ 数据已复制到 '{sheet}'")
            return True
        except Exception as e:
            self._log(f"  ✗ 复制数据失败: {e}")
            return False

    async def create_sample_pivot_table(self, data_range: str) -> bool:
        """先尝试完整透视流程，失败后尝试简易流程"""
        if await self.create_pivot_table(data_range):
            return True

        self._log("  完整透视流程失败，尝试简易流程")
        if await self.create_simple_pivot_table(data_range):
            return True

        self._log("  ✗ 所有透视表创建方式均失败")
        return False

    # ============ 其他操作 ============

    async def analyze_selection(self) -> ColumnAnalysis:
        """对当前选区做整列类型分析"""
        try:
            selection = await self.port.get_selection()
            if selection is None or selection.is_empty:
                return ColumnAnalysis()
            return analyze_columns(selection.values)
        except Exception as e:
            self._log(f"  ✗ 数据分析失败: {e}")
            return ColumnAnalysis()

    async def write_value_to_cell(self, value: Any, address: str) -> bool:
        """写入单个值，数值使用两位小数格式"""
        try:
            number_format = SUM_NUMBER_FORMAT if is_numeric_coercible(value) else None
            self.port.write_cell(address, value, number_format)
            await self.port.sync()
            self._log(f"  已写入 {value} -> {address}")
            return True
        except Exception as e:
            self._log(f"  ✗ 写入 {address} 失败: {e}")
            return False

    async def check_connection(self) -> bool:
        """连接测试：向活动工作表 A1 写入测试值并读回"""
        try:
            test_value = f"Excel connection test: {datetime.now().strftime('%H:%M:%S')}"
            self.port.write_cell("A1", test_value)
            await self.port.sync()
            read_back = await self.port.read_cell("A1")
            self._log(f"  连接测试读回: {read_back}")
            return read_back == test_value
        except Exception as e:
            self._log(f"  ✗ 连接测试失败: {e}")
            return False

    def get_log(self) -> List[str]:
        """获取操作日志"""
        return self.operation_log

    def get_operation_history(self) -> List[Dict[str, Any]]:
        """获取操作历史记录"""
        return self.operation_history
