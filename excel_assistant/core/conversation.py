"""
对话编排模块
管理对话历史，每轮对话：识别意图 -> 执行操作 -> 回复确认，
没有执行任何操作时交给大语言模型回答
"""

import asyncio
from typing import List, Optional

from excel_assistant.core.action_executor import ActionExecutor
from excel_assistant.core.aggregation import format_number
from excel_assistant.core.completion_service import CompletionService
from excel_assistant.core.intent_classifier import IntentClassifier
from excel_assistant.core.spreadsheet_port import SpreadsheetPort
from excel_assistant.models import (
    ActionType,
    ConversationMessage,
    SelectionSnapshot,
    SumRequest,
)


GREETING = (
    "Hello! I'm your Excel Assistant. Select some cells and ask me anything "
    "about Excel formulas, charts, or data analysis."
)

SUM_CONFIRMATION = "I've calculated the sum of the selected cells and placed it in the cell below the selection."
COLUMN_SUM_CONFIRMATION = (
    "I've calculated the sum for the following columns: {names}. "
    "The results have been placed in the cells below each column."
)
COLUMN_SUM_FALLBACK_CONFIRMATION = "I've calculated the sum of all selected cells and placed it in the cell below the selection."
PIVOT_CONFIRMATION = "I've created a pivot table based on your selected data in a new worksheet named '{sheet}'."
CHART_CONFIRMATION = "I've created a {kind} chart using your selected data."
FORMULA_CONFIRMATION = "I've applied the formula {formula} to your selected cells."
AMOUNT_COST_CONFIRMATION = "I've calculated the sums: Amount = {amount}, Cost = {cost}. The results are now in row {row}."
NEXT_ROW_INTERIM = "I'll calculate the sums and put them in the next row..."
NEXT_ROW_CONFIRMATION = "✅ I've calculated the sums for each column and placed them in the row below your selection."
NEXT_ROW_APOLOGY = (
    "❌ Sorry, I couldn't calculate the sums. "
    "Please make sure you've selected a range with numeric data."
)


class ConversationBusyError(Exception):
    """上一轮对话尚未结束"""


class ConversationOrchestrator:
    """
    对话编排器

    同一时间只处理一轮对话；每轮只读取一次选区，
    所有表格操作和模型调用按顺序依次执行。
    """

    def __init__(
        self,
        port: SpreadsheetPort,
        executor: ActionExecutor,
        classifier: IntentClassifier,
        completion: CompletionService,
        history_window: int = 10
    ):
        self.port = port
        self.executor = executor
        self.classifier = classifier
        self.completion = completion
        self.history_window = history_window

        self.messages: List[ConversationMessage] = [
            ConversationMessage(role="assistant", content=GREETING)
        ]
        self.last_error: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    async def submit(self, text: str) -> List[ConversationMessage]:
        """
        处理一轮用户输入

        Returns:
            List[ConversationMessage]: 本轮新增的消息（包含用户消息）

        Raises:
            ConversationBusyError: 上一轮还在进行中
        """
        if self._lock.locked():
            raise ConversationBusyError("A previous message is still being processed")

        async with self._lock:
            text = (text or "").strip()
            if not text:
                return []

            context = list(self.messages)
            appended: List[ConversationMessage] = []
            self.last_error = None
            self._append(appended, "user", text)

            try:
                await self._run_turn(text, context, appended)
            except Exception as e:
                self.last_error = f"Error: {e or 'Something went wrong'}"
                print(f"❌ 对话处理失败: {type(e).__name__}: {e}")

            return appended

    async def _run_turn(self, text: str, context: List[ConversationMessage], appended: List[ConversationMessage]):
        snapshot = await self._snapshot()
        performed = False

        request = self.classifier.classify(text, snapshot)
        if request is not None:
            print(f"🔍 识别到操作: {request.type.value}")
            performed = await self._run_primary(request, snapshot, appended)

        overlay = self.classifier.classify_overlay(text, snapshot)
        if overlay is not None:
            print(f"🔍 识别到叠加操作: {overlay.type.value}")
            if await self._run_overlay(overlay, snapshot, appended):
                performed = True

        if not performed:
            recent = context[-self.history_window:] if self.history_window > 0 else []
            reply = await self.completion.complete(recent, text, snapshot)
            self._append(appended, "assistant", reply)

    async def _snapshot(self) -> Optional[SelectionSnapshot]:
        """读取本轮的选区，失败按没有选区处理"""
        try:
            return await self.port.get_selection()
        except Exception as e:
            print(f"⚠️ 读取选区失败: {e}")
            return None

    async def _run_primary(self, request, snapshot: SelectionSnapshot, appended: List[ConversationMessage]) -> bool:
        outcome = await self.executor.execute(request, snapshot)

        if request.type == ActionType.COLUMN_SUM:
            if outcome.succeeded:
                names = ", ".join(request.column_names)
                self._append(appended, "assistant", COLUMN_SUM_CONFIRMATION.format(names=names))
                return True
            fallback = await self.executor.execute(SumRequest(), snapshot)
            if fallback.succeeded:
                self._append(appended, "assistant", COLUMN_SUM_FALLBACK_CONFIRMATION)
                return True
            return False

        if not outcome.succeeded:
            return False

        if request.type == ActionType.SUM:
            message = SUM_CONFIRMATION
        elif request.type == ActionType.PIVOT_TABLE:
            message = PIVOT_CONFIRMATION.format(sheet=request.destination_sheet or self.executor.pivot_sheet_name)
        elif request.type == ActionType.CHART:
            message = CHART_CONFIRMATION.format(kind=request.chart_kind.friendly_name)
        elif request.type == ActionType.FORMULA:
            message = FORMULA_CONFIRMATION.format(formula=request.formula)
        else:
            message = outcome.user_message

        self._append(appended, "assistant", message)
        return True

    async def _run_overlay(self, request, snapshot: SelectionSnapshot, appended: List[ConversationMessage]) -> bool:
        if request.type == ActionType.AMOUNT_COST_SUM:
            outcome = await self.executor.execute(request, snapshot)
            if not outcome.succeeded:
                return False
            self._append(appended, "assistant", AMOUNT_COST_CONFIRMATION.format(
                amount=format_number(outcome.results.get("amount", 0.0)),
                cost=format_number(outcome.results.get("cost", 0.0)),
                row=snapshot.row_index + snapshot.row_count + 1
            ))
            return True

        self._append(appended, "assistant", NEXT_ROW_INTERIM)
        outcome = await self.executor.execute(request, snapshot)
        if outcome.succeeded:
            self._append(appended, "assistant", NEXT_ROW_CONFIRMATION)
            return True
        self._append(appended, "assistant", NEXT_ROW_APOLOGY)
        return False

    def _append(self, appended: List[ConversationMessage], role: str, content: str):
        message = ConversationMessage(role=role, content=content)
        self.messages.append(message)
        appended.append(message)

    def get_messages(self) -> List[ConversationMessage]:
        return list(self.messages)
