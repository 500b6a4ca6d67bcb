"""
Excel 对话助手
"""

__version__ = "1.0.0"
