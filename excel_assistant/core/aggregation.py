"""
汇总计算模块
对单元格做数值转换并求和，整列求和与逐列求和共用同一套转换规则
"""

import re
from typing import Any, Iterable, List, Optional, Sequence


# 与 JavaScript parseFloat 一致：只取开头的十进制数字部分
_DECIMAL_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def to_number(value: Any) -> Optional[float]:
    """
    将单元格值转换为数值

    Returns:
        float | None: 数字直接返回；字符串按开头的十进制前缀解析；
        布尔值、空值和无法解析的内容返回 None
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DECIMAL_PREFIX.match(value)
        if match:
            return float(match.group(1))
    return None


def is_numeric_coercible(value: Any) -> bool:
    """单元格能否参与求和"""
    return to_number(value) is not None


def sum_cells(cells: Iterable[Any]) -> float:
    """对一组单元格求和，无法转换的值按 0 处理"""
    total = 0.0
    for value in cells:
        number = to_number(value)
        if number is not None:
            total += number
    return total


def sum_grid(values: Sequence[Sequence[Any]]) -> float:
    """对整个区域求和"""
    return sum_cells(cell for row in values for cell in row)


def sum_column(values: Sequence[Sequence[Any]], column: int, skip_header: bool = True) -> float:
    """对某一列求和，默认跳过首行表头"""
    start = 1 if skip_header else 0
    return sum_cells(row[column] for row in values[start:] if column < len(row))


def sum_columns(values: Sequence[Sequence[Any]]) -> List[float]:
    """逐列求和（包含首行）"""
    if not values:
        return []
    width = max(len(row) for row in values)
    return [sum_column(values, col, skip_header=False) for col in range(width)]


def format_number(value: float) -> str:
    """整数结果不显示小数部分"""
    if float(value).is_integer():
        return str(int(value))
    return str(value)
