"""
列名解析模块
将用户给出的模糊列名映射到表头中的列索引
"""

from typing import Any, Optional, Sequence


def normalize_header(header: Any) -> str:
    """规范化表头：转字符串、去除换行符和首尾空白、转小写"""
    if header is None:
        return ""
    return str(header).replace('\n', '').replace('\r', '').strip().lower()


def resolve_column(headers: Sequence[Any], requested: str) -> Optional[int]:
    """
    根据列名获取列索引(从0开始)

    匹配顺序：
    1. 大小写不敏感的完全匹配
    2. 大小写不敏感的包含匹配（表头包含请求的列名）

    同一阶段内按从左到右的顺序取第一个匹配；找不到返回 None，
    由调用方跳过该列而不是中止整个操作。
    """
    target = normalize_header(requested)
    if not target:
        return None

    normalized = [normalize_header(h) for h in headers]

    # 1. 完全匹配
    for i, header in enumerate(normalized):
        if header == target:
            return i

    # 2. 包含匹配
    for i, header in enumerate(normalized):
        if header and target in header:
            return i

    return None
