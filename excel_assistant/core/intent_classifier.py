"""
意图识别模块
按固定优先级的规则表把用户输入识别为表格操作请求
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from excel_assistant.core.aggregation import is_numeric_coercible
from excel_assistant.models import (
    AmountCostSumRequest,
    ChartKind,
    ChartRequest,
    ColumnSumRequest,
    FormulaRequest,
    NextRowSumRequest,
    PivotTableRequest,
    SelectionSnapshot,
    SumRequest,
)


_FLAGS = re.IGNORECASE

GENERIC_SUM_PATTERN = re.compile(
    r"\b(sum|add|total|calculate)\b.*?\b(column|row|cell|range|value|amount|cost|price|number|data)\b", _FLAGS
)
COLUMN_SUM_PATTERNS = [
    re.compile(r"\b(sum|add|total)\b.*?\b(column|columns)\b", _FLAGS),
    re.compile(r"\b(sum|add|total)\b.*?\b(amount|cost|price|value|total)\b", _FLAGS),
]
PIVOT_PATTERN = re.compile(r"\b(create|make|build|generate)\b.*\b(pivot|pivot\s*table)\b", _FLAGS)
CHART_PATTERN = re.compile(r"\b(create|make|build|generate|plot)\b.*\b(chart|graph|plot)\b", _FLAGS)
FORMULA_PATTERN = re.compile(r"\b(apply|use|add|create)\b.*\b(formula|function)\b", _FLAGS)
NEXT_ROW_PATTERN = re.compile(r"\b(next|below|following)\b.*?\b(row|line)\b", _FLAGS)

# 公式提取：函数调用优先，其次是运算表达式
FORMULA_EXTRACT_PATTERNS = [
    re.compile(r"=([A-Z]+\([^)]+\))", _FLAGS),
    re.compile(r"=([A-Z0-9+\-*/^()&<>=\" ]+)", _FLAGS),
]

# 常见的数值列名
COLUMN_KEYWORD_PATTERN = re.compile(
    r"\b(amount|cost|price|value|total|sales|revenue|profit|quantity)\b", _FLAGS
)
# 触发词之后的自由文本（用于提取列名）
COLUMN_TEXT_PATTERN = re.compile(r"\b(?:sum|add|total)\b(?:\s+up)?\s+([\w\s,]+)", _FLAGS)
COLUMN_TEXT_FILLER = {"the", "column", "columns", "of", "up", "all"}

# 列数不超过该值时，自动识别直接使用全部表头
AUTO_ALL_COLUMNS_LIMIT = 3

# (关键词, 图表类型)，按顺序取第一个
CHART_KEYWORDS = [
    (re.compile(r"\bbar\b", _FLAGS), ChartKind.BAR_CLUSTERED),
    (re.compile(r"\bline\b", _FLAGS), ChartKind.LINE),
    (re.compile(r"\bpie\b", _FLAGS), ChartKind.PIE),
    (re.compile(r"\bscatter\b", _FLAGS), ChartKind.XY_SCATTER),
]


@dataclass(frozen=True)
class IntentRule:
    """一条识别规则：命中条件 + 请求构造函数（构造失败返回 None）"""
    name: str
    predicate: Callable[[str], bool]
    builder: Callable[[str, SelectionSnapshot], Optional[object]]


def _matches(*patterns: re.Pattern) -> Callable[[str], bool]:
    return lambda text: any(p.search(text) for p in patterns)


def is_column_scoped(text: str) -> bool:
    """是否为指定列求和的说法"""
    return any(p.search(text) for p in COLUMN_SUM_PATTERNS)


def chart_kind_from_text(text: str) -> ChartKind:
    """根据关键词确定图表类型，默认簇状柱形图"""
    for pattern, kind in CHART_KEYWORDS:
        if pattern.search(text):
            return kind
    return ChartKind.COLUMN_CLUSTERED


def extract_formula(text: str) -> Optional[str]:
    """从输入中提取以 '=' 开头的公式"""
    for pattern in FORMULA_EXTRACT_PATTERNS:
        match = pattern.search(text)
        if match:
            formula = match.group(0).strip()
            if len(formula) > 1:
                return formula
    return None


def extract_column_names(text: str, selection: SelectionSnapshot) -> List[str]:
    """
    提取要求和的列名

    依次尝试：
    1. 输入中出现的常见列名关键词
    2. 触发词之后的文本，按逗号或 and 拆分
    3. 根据选区自动识别：列数不超过 3 时取全部表头，否则取含数值的列
    """
    names: List[str] = []
    for match in COLUMN_KEYWORD_PATTERN.finditer(text):
        name = match.group(0).lower()
        if name not in names:
            names.append(name)
    if names:
        return names

    match = COLUMN_TEXT_PATTERN.search(text)
    if match:
        for part in re.split(r",|\band\b", match.group(1), flags=_FLAGS):
            words = [w for w in part.split() if w.lower() not in COLUMN_TEXT_FILLER]
            if words:
                names.append(" ".join(words))
    if names:
        return names

    headers = selection.headers
    if len(headers) <= AUTO_ALL_COLUMNS_LIMIT:
        return [str(h) for h in headers if h is not None and str(h).strip()]

    for col, header in enumerate(headers):
        if header is None or not str(header).strip():
            continue
        body = (row[col] for row in selection.values[1:] if col < len(row))
        if any(is_numeric_coercible(value) for value in body):
            names.append(str(header))
    return names


class IntentClassifier:
    """
    意图识别器

    主规则（1-5）按顺序匹配，第一个命中的规则决定结果；
    叠加规则（amount/cost 求和、下一行求和）单独判断，可以和主规则在同一轮都生效。
    """

    def __init__(self, chart_title: str = "Chart from selected data"):
        self.chart_title = chart_title
        self.rules: List[IntentRule] = [
            IntentRule("sum", self._is_generic_sum, self._build_sum),
            IntentRule("column_sum", is_column_scoped, self._build_column_sum),
            IntentRule("pivot_table", _matches(PIVOT_PATTERN), self._build_pivot),
            IntentRule("chart", _matches(CHART_PATTERN), self._build_chart),
            IntentRule("formula", _matches(FORMULA_PATTERN), self._build_formula),
        ]
        self.overlay_rules: List[IntentRule] = [
            IntentRule("amount_cost_sum", self._mentions_amount_and_cost, self._build_amount_cost_sum),
            IntentRule("next_row_sum", self._is_next_row, self._build_next_row_sum),
        ]

    def classify(self, text: str, selection: Optional[SelectionSnapshot]):
        """
        匹配主规则

        Returns:
            ActionRequest | None: 命中规则但构造失败时也返回 None，不再尝试后续规则
        """
        return self._first_match(self.rules, text, selection)

    def classify_overlay(self, text: str, selection: Optional[SelectionSnapshot]):
        """匹配叠加规则（amount/cost 优先于下一行求和）"""
        return self._first_match(self.overlay_rules, text, selection)

    def matched_rule(self, text: str) -> Optional[str]:
        """返回命中的主规则名称（不构造请求）"""
        for rule in self.rules:
            if rule.predicate(text):
                return rule.name
        return None

    @staticmethod
    def _first_match(rules: List[IntentRule], text: str, selection: Optional[SelectionSnapshot]):
        if not text or selection is None or selection.is_empty:
            return None
        for rule in rules:
            if rule.predicate(text):
                return rule.builder(text, selection)
        return None

    # ============ 条件 ============

    @staticmethod
    def _is_generic_sum(text: str) -> bool:
        return bool(GENERIC_SUM_PATTERN.search(text)) and not is_column_scoped(text)

    @staticmethod
    def _mentions_amount_and_cost(text: str) -> bool:
        lowered = text.lower()
        return "amount" in lowered and "cost" in lowered

    @staticmethod
    def _is_next_row(text: str) -> bool:
        lowered = text.lower()
        return bool(NEXT_ROW_PATTERN.search(text)) or "next row" in lowered or "row below" in lowered

    # ============ 构造 ============

    @staticmethod
    def _build_sum(text: str, selection: SelectionSnapshot):
        return SumRequest()

    @staticmethod
    def _build_column_sum(text: str, selection: SelectionSnapshot):
        if selection.row_count < 2:
            return None
        names = extract_column_names(text, selection)
        if not names:
            return None
        return ColumnSumRequest(column_names=names)

    @staticmethod
    def _build_pivot(text: str, selection: SelectionSnapshot):
        return PivotTableRequest(data_range=selection.range_address)

    def _build_chart(self, text: str, selection: SelectionSnapshot):
        return ChartRequest(
            chart_kind=chart_kind_from_text(text),
            data_range=selection.range_address,
            title=self.chart_title
        )

    @staticmethod
    def _build_formula(text: str, selection: SelectionSnapshot):
        formula = extract_formula(text)
        if formula is None:
            return None
        return FormulaRequest(formula=formula)

    @staticmethod
    def _build_amount_cost_sum(text: str, selection: SelectionSnapshot):
        if selection.row_count < 2:
            return None
        return AmountCostSumRequest()

    @staticmethod
    def _build_next_row_sum(text: str, selection: SelectionSnapshot):
        return NextRowSumRequest()
