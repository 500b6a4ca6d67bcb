"""
类型与表头推断模块
根据选区数据判断是否有表头，并推断每列的数据类型
"""

import re
from datetime import date, datetime, time
from typing import Any, List, Sequence

import pandas as pd

from excel_assistant.models import ColumnAnalysis, ColumnClassification, ColumnType


# 快速推断只采样表头下方的前几行
QUICK_SAMPLE_ROWS = 4

# 整列分析的占比阈值
ANALYSIS_THRESHOLD = 0.7

_STRICT_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _is_numeric_text(value: Any) -> bool:
    """整个字符串是一个十进制数"""
    return isinstance(value, str) and bool(_STRICT_NUMBER.match(value))


def is_date_like(value: Any) -> bool:
    """判断是否为日期（日期对象或可被通用日期解析识别的字符串）"""
    if isinstance(value, (datetime, date, time)):
        return True
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        return not pd.isna(pd.to_datetime(value, errors="coerce"))
    except (ValueError, TypeError, OverflowError):
        return False


def detect_headers(grid: Sequence[Sequence[Any]]) -> bool:
    """
    判断首行是否为表头

    启发式规则：首行至少有一个文本单元格，且文本单元格数不少于第二行
    数值单元格数，即视为有表头（[["Name", "Qty"], [1, 2]] 有表头）。
    只有一行（或为空）的区域返回 False。
    """
    if len(grid) <= 1:
        return False

    first_row, second_row = grid[0], grid[1]
    text_count = sum(1 for value in first_row if isinstance(value, str))
    numeric_count = sum(1 for value in second_row if _is_number(value))
    return text_count > 0 and text_count >= numeric_count


def classify_columns(
    grid: Sequence[Sequence[Any]],
    sample_rows: int = QUICK_SAMPLE_ROWS
) -> List[ColumnClassification]:
    """
    快速推断列类型（用于透视表默认字段）

    只采样第 1..sample_rows 行；数值多于文本即为数值列，否则为文本列。
    采样范围内全空的列不返回。
    """
    if not grid:
        return []

    headers = grid[0]
    last_row = min(sample_rows + 1, len(grid))
    result = []

    for col, header in enumerate(headers):
        numeric_count = 0
        text_count = 0
        date_count = 0

        for row in range(1, last_row):
            value = grid[row][col] if col < len(grid[row]) else None
            if _is_empty(value):
                continue
            if _is_number(value) or _is_numeric_text(value):
                numeric_count += 1
            elif is_date_like(value):
                date_count += 1
            else:
                text_count += 1

        if numeric_count + text_count + date_count == 0:
            continue

        column_type = ColumnType.NUMERIC if numeric_count > text_count else ColumnType.TEXT
        result.append(ColumnClassification(index=col, header=header, column_type=column_type))

    return result


def analyze_columns(
    grid: Sequence[Sequence[Any]],
    threshold: float = ANALYSIS_THRESHOLD
) -> ColumnAnalysis:
    """
    整列分析：统计全部数据行中各类型的占比

    数值占比超过阈值为数值列，日期占比超过阈值为日期列，其余为文本列；
    没有非空值的列跳过。
    """
    analysis = ColumnAnalysis()
    if not grid:
        return analysis

    headers = grid[0]
    for col, header in enumerate(headers):
        numeric_count = 0
        text_count = 0
        date_count = 0

        for row in grid[1:]:
            value = row[col] if col < len(row) else None
            if _is_empty(value):
                continue
            if _is_number(value):
                numeric_count += 1
            elif is_date_like(value):
                date_count += 1
            else:
                text_count += 1

        total = numeric_count + text_count + date_count
        if total == 0:
            continue

        label = str(header) if header is not None else ""
        if numeric_count / total > threshold:
            analysis.numeric_columns.append(label)
        elif date_count / total > threshold:
            analysis.date_columns.append(label)
        else:
            analysis.text_columns.append(label)

    return analysis
