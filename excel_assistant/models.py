"""
数据模型定义
使用 Pydantic 定义选区快照、操作请求、执行结果和对话消息
"""

from typing import Optional, List, Dict, Any, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


# ============ 选区与列分析相关模型 ============

class SelectionSnapshot(BaseModel):
    """一次读取的当前选区（单轮对话内有效，不可修改）"""
    model_config = ConfigDict(frozen=True)

    range_address: str = Field(description="选区地址，如 Sheet1!A1:C4")
    values: List[List[Any]] = Field(default=[], description="单元格值（行 × 列）")
    row_count: int = Field(default=0, description="行数")
    column_count: int = Field(default=0, description="列数")
    row_index: int = Field(default=0, description="选区起始行(从0开始)")
    column_index: int = Field(default=0, description="选区起始列(从0开始)")
    has_headers: bool = Field(default=False, description="首行是否像表头")

    @property
    def is_empty(self) -> bool:
        return self.row_count == 0 or self.column_count == 0 or not self.values

    @property
    def headers(self) -> List[Any]:
        return list(self.values[0]) if self.values else []


class ColumnType(str, Enum):
    """列类型"""
    NUMERIC = "numeric"
    TEXT = "text"
    DATE = "date"


class ColumnClassification(BaseModel):
    """单列的类型标签"""
    index: int = Field(description="列索引(从0开始)")
    header: Any = Field(default=None, description="表头原始值")
    column_type: ColumnType = Field(description="推断的列类型")


class ColumnAnalysis(BaseModel):
    """整列分析报告（按类型分组的表头）"""
    numeric_columns: List[str] = Field(default=[], description="数值列")
    text_columns: List[str] = Field(default=[], description="文本列")
    date_columns: List[str] = Field(default=[], description="日期列")


# ============ 操作请求相关模型 ============

class ActionType(str, Enum):
    """支持的操作类型"""
    SUM = "SUM"                          # 选区求和
    COLUMN_SUM = "COLUMN_SUM"            # 指定列求和
    PIVOT_TABLE = "PIVOT_TABLE"          # 数据透视
    CHART = "CHART"                      # 创建图表
    FORMULA = "FORMULA"                  # 应用公式
    AMOUNT_COST_SUM = "AMOUNT_COST_SUM"  # amount/cost 两列求和
    NEXT_ROW_SUM = "NEXT_ROW_SUM"        # 逐列求和写入下一行


class ChartKind(str, Enum):
    """图表类型（取值与 Excel.ChartType 一致）"""
    COLUMN_CLUSTERED = "ColumnClustered"
    BAR_CLUSTERED = "BarClustered"
    LINE = "Line"
    PIE = "Pie"
    XY_SCATTER = "XYScatter"

    @property
    def friendly_name(self) -> str:
        return {
            ChartKind.BAR_CLUSTERED: "bar",
            ChartKind.LINE: "line",
            ChartKind.PIE: "pie",
            ChartKind.XY_SCATTER: "scatter",
        }.get(self, "column")


class SumRequest(BaseModel):
    """整个选区求和，结果写在选区下方"""
    type: Literal[ActionType.SUM] = ActionType.SUM
    target_cell: Optional[str] = Field(default=None, description="目标单元格(可选)")


class ColumnSumRequest(BaseModel):
    """按列名求和，结果写在各列下方"""
    type: Literal[ActionType.COLUMN_SUM] = ActionType.COLUMN_SUM
    column_names: List[str] = Field(description="要求和的列名")


class PivotTableRequest(BaseModel):
    """数据透视"""
    type: Literal[ActionType.PIVOT_TABLE] = ActionType.PIVOT_TABLE
    data_range: str = Field(description="源数据地址")
    destination_sheet: Optional[str] = Field(default=None, description="目标工作表")
    row_fields: Optional[List[str]] = Field(default=None, description="行字段")
    column_fields: Optional[List[str]] = Field(default=None, description="列字段")
    value_fields: Optional[List[str]] = Field(default=None, description="值字段(按求和汇总)")

    @property
    def has_fields(self) -> bool:
        return bool(self.row_fields or self.column_fields or self.value_fields)


class ChartRequest(BaseModel):
    """创建图表"""
    type: Literal[ActionType.CHART] = ActionType.CHART
    chart_kind: ChartKind = Field(default=ChartKind.COLUMN_CLUSTERED, description="图表类型")
    data_range: str = Field(description="数据地址")
    title: Optional[str] = Field(default=None, description="图表标题")


class FormulaRequest(BaseModel):
    """应用公式"""
    type: Literal[ActionType.FORMULA] = ActionType.FORMULA
    formula: str = Field(description="公式文本")
    target_cell: Optional[str] = Field(default=None, description="目标地址(默认选区左上角单元格)")


class AmountCostSumRequest(BaseModel):
    """amount 与 cost 两列求和"""
    type: Literal[ActionType.AMOUNT_COST_SUM] = ActionType.AMOUNT_COST_SUM
    column_names: List[str] = Field(default=["amount", "cost"])


class NextRowSumRequest(BaseModel):
    """逐列求和写入选区下一行"""
    type: Literal[ActionType.NEXT_ROW_SUM] = ActionType.NEXT_ROW_SUM


ActionRequest = Annotated[
    Union[
        SumRequest,
        ColumnSumRequest,
        PivotTableRequest,
        ChartRequest,
        FormulaRequest,
        AmountCostSumRequest,
        NextRowSumRequest,
    ],
    Field(discriminator="type"),
]


class ActionOutcome(BaseModel):
    """操作执行结果"""
    succeeded: bool
    user_message: str = Field(default="")
    results: Dict[str, float] = Field(default={}, description="计算结果(列名 -> 数值)")


# ============ 对话相关模型 ============

class ConversationMessage(BaseModel):
    """对话消息"""
    role: Literal["user", "assistant"]
    content: str


# ============ API 请求/响应模型 ============

class SessionResponse(BaseModel):
    """会话创建响应"""
    success: bool
    session_id: str = Field(default="")
    messages: List[ConversationMessage] = Field(default=[])
    message: str = Field(default="")


class SelectRequest(BaseModel):
    """设置选区请求"""
    session_id: str
    address: str = Field(description="选区地址，如 A1:C4 或 Sheet1!A1:C4")


class ChatRequest(BaseModel):
    """对话请求"""
    session_id: str
    text: str


class ChatResponse(BaseModel):
    """对话响应"""
    messages: List[ConversationMessage] = Field(default=[], description="本轮新增的消息")
    error: Optional[str] = Field(default=None)


class ActionCallRequest(BaseModel):
    """结构化操作请求"""
    session_id: str
    action: ActionRequest
