"""
核心模块
包含意图识别、列名解析、类型推断、汇总计算、操作执行和对话编排等核心功能
"""

from .spreadsheet_port import SpreadsheetPort, WorksheetError
from .workbook_port import WorkbookPort
from .intent_classifier import IntentClassifier
from .action_executor import ActionExecutor, ExecutionError
from .completion_service import CompletionService, OpenAICompletionService
from .conversation import ConversationBusyError, ConversationOrchestrator

__all__ = [
    "SpreadsheetPort",
    "WorksheetError",
    "WorkbookPort",
    "IntentClassifier",
    "ActionExecutor",
    "ExecutionError",
    "CompletionService",
    "OpenAICompletionService",
    "ConversationBusyError",
    "ConversationOrchestrator",
]
