"""
列名解析单元测试
"""

from excel_assistant.core.column_resolver import normalize_header, resolve_column


class TestColumnResolver:
    """resolve_column 测试用例"""

    def test_exact_match_is_case_insensitive(self):
        assert resolve_column(["Amount", "Total Cost"], "amount") == 0

    def test_substring_match(self):
        assert resolve_column(["Amount", "Total Cost"], "cost") == 1

    def test_exact_match_preferred_over_substring(self):
        """完全匹配优先，即使包含匹配的列更靠左"""
        headers = ["Total Amount", "Amount"]
        assert resolve_column(headers, "amount") == 1

    def test_first_substring_match_wins(self):
        headers = ["Net Amount", "Gross Amount"]
        assert resolve_column(headers, "amount") == 0

    def test_not_found(self):
        assert resolve_column(["Date", "Notes"], "price") is None

    def test_non_string_headers(self):
        headers = [None, 2024, "Sales\n(USD)"]
        assert resolve_column(headers, "2024") == 1
        assert resolve_column(headers, "sales(usd)") == 2

    def test_blank_request(self):
        assert resolve_column(["A"], "  ") is None

    def test_normalize_header(self):
        assert normalize_header("  Unit\r\nPrice ") == "unitprice"
        assert normalize_header(None) == ""
