"""
ConversationOrchestrator 单元测试
测试每轮对话的操作执行、确认消息和回退到模型回答的流程
"""

import asyncio

import pytest

from conftest import FakeCompletionService, ScriptedPort, build_workbook
from excel_assistant.core.action_executor import ActionExecutor
from excel_assistant.core.conversation import (
    GREETING,
    ConversationBusyError,
    ConversationOrchestrator,
)
from excel_assistant.core.intent_classifier import IntentClassifier


def make_orchestrator(port, completion):
    executor = ActionExecutor(port, clock=lambda: 1700000000.0)
    return ConversationOrchestrator(port, executor, IntentClassifier(), completion)


def texts(messages):
    return [(m.role, m.content) for m in messages]


class TestConversationOrchestrator:
    """对话编排测试用例"""

    @pytest.fixture
    def ledger_port(self):
        port = ScriptedPort(build_workbook([
            ["Date", "Amount", "Notes"],
            ["2024-01-01", 10, "rent"],
            ["2024-01-02", 20, "food"],
            ["2024-01-03", 30, "misc"],
        ]))
        port.select("A1:C4")
        return port

    def test_initial_greeting(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        assert texts(orchestrator.get_messages()) == [("assistant", GREETING)]

    @pytest.mark.asyncio
    async def test_sum_named_column_end_to_end(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("sum the amount column")

        assert texts(appended) == [
            ("user", "sum the amount column"),
            ("assistant", "I've calculated the sum for the following columns: amount. "
                          "The results have been placed in the cells below each column."),
        ]
        cell = ledger_port.workbook["Data"]["B5"]
        assert cell.value == 60
        assert cell.number_format == "0.00"
        assert fake_completion.calls == []

    @pytest.mark.asyncio
    async def test_column_sum_falls_back_to_whole_sum(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("sum the price column")

        assert appended[-1].content == (
            "I've calculated the sum of all selected cells and placed it in the cell below the selection."
        )
        assert ledger_port.workbook["Data"]["A5"].value is not None
        assert fake_completion.calls == []

    @pytest.mark.asyncio
    async def test_generic_sum(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("add up this range")

        assert appended[-1].content == (
            "I've calculated the sum of the selected cells and placed it in the cell below the selection."
        )

    @pytest.mark.asyncio
    async def test_chart_confirmation(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("make a line chart")

        assert appended[-1].content == "I've created a line chart using your selected data."
        assert len(ledger_port.workbook["Data"]._charts) == 1

    @pytest.mark.asyncio
    async def test_pivot_confirmation(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("create a pivot table")

        assert appended[-1].content == (
            "I've created a pivot table based on your selected data in a new worksheet named 'PivotTable'."
        )
        assert "PivotTable" in ledger_port.workbook.sheetnames

    @pytest.mark.asyncio
    async def test_formula_confirmation(self, ledger_port, fake_completion):
        ledger_port.select("D2:D4")
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("apply formula =B2*2")

        assert appended[-1].content == "I've applied the formula =B2*2 to your selected cells."
        assert ledger_port.workbook["Data"]["D2"].value == "=B2*2"
        assert ledger_port.workbook["Data"]["D3"].value is None

    @pytest.mark.asyncio
    async def test_amount_and_cost_overlay_adds_second_message(self, fake_completion):
        port = ScriptedPort(build_workbook([
            ["Item", "Amount", "Cost"],
            ["a", 10, 4],
            ["b", 20, 6],
            ["c", 30, 1.5],
        ]))
        port.select("A1:C4")
        orchestrator = make_orchestrator(port, fake_completion)
        appended = await orchestrator.submit("sum the amount and cost columns")

        assert texts(appended)[1:] == [
            ("assistant", "I've calculated the sum for the following columns: amount, cost. "
                          "The results have been placed in the cells below each column."),
            ("assistant", "I've calculated the sums: Amount = 60, Cost = 11.5. The results are now in row 5."),
        ]
        assert port.workbook["Data"]["B5"].value == 60
        assert port.workbook["Data"]["C5"].value == 11.5
        assert fake_completion.calls == []

    @pytest.mark.asyncio
    async def test_next_row_overlay(self, fake_completion):
        port = ScriptedPort(build_workbook([[1, 2], [3, 4]]))
        port.select("A1:B2")
        orchestrator = make_orchestrator(port, fake_completion)
        appended = await orchestrator.submit("put the sums in the next row")

        assert texts(appended)[1:] == [
            ("assistant", "I'll calculate the sums and put them in the next row..."),
            ("assistant", "✅ I've calculated the sums for each column and placed them in the row below your selection."),
        ]
        assert port.workbook["Data"]["A3"].value == 4
        assert port.workbook["Data"]["B3"].value == 6

    @pytest.mark.asyncio
    async def test_next_row_failure_apologizes_and_asks_model(self, fake_completion):
        port = ScriptedPort(build_workbook([[1, 2], [3, 4]]))
        port.select("A1:B2")
        port.fail("write_cell")
        orchestrator = make_orchestrator(port, fake_completion)
        appended = await orchestrator.submit("put the sums in the next row")

        assert appended[2].content.startswith("❌ Sorry, I couldn't calculate the sums.")
        assert appended[-1].content == fake_completion.reply
        assert len(fake_completion.calls) == 1

    @pytest.mark.asyncio
    async def test_unmatched_text_goes_to_completion(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("what is this data about?")

        assert texts(appended) == [
            ("user", "what is this data about?"),
            ("assistant", fake_completion.reply),
        ]
        call = fake_completion.calls[0]
        assert call["query"] == "what is this data about?"
        assert texts(call["history"]) == [("assistant", GREETING)]
        assert call["data_context"].range_address == "Data!A1:C4"

    @pytest.mark.asyncio
    async def test_failed_action_goes_to_completion(self, ledger_port, fake_completion):
        ledger_port.fail("create_chart")
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        appended = await orchestrator.submit("make a chart")

        assert appended[-1].content == fake_completion.reply

    @pytest.mark.asyncio
    async def test_no_selection_goes_to_completion(self, fake_completion):
        port = ScriptedPort(build_workbook([[1]]))
        orchestrator = make_orchestrator(port, fake_completion)
        await orchestrator.submit("sum the amount column")

        assert fake_completion.calls[0]["data_context"] is None

    @pytest.mark.asyncio
    async def test_selection_error_treated_as_no_selection(self, ledger_port, fake_completion):
        ledger_port.selection_error = RuntimeError("host busy")
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        await orchestrator.submit("sum the amount column")

        assert fake_completion.calls[0]["data_context"] is None

    @pytest.mark.asyncio
    async def test_history_window(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        for i in range(7):
            await orchestrator.submit(f"question {i}")

        history = fake_completion.calls[-1]["history"]
        assert len(history) == 10
        assert history[-1].content == fake_completion.reply
        assert history[-2].content == "question 5"

    @pytest.mark.asyncio
    async def test_blank_input(self, ledger_port, fake_completion):
        orchestrator = make_orchestrator(ledger_port, fake_completion)
        assert await orchestrator.submit("   ") == []
        assert len(orchestrator.get_messages()) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_sets_last_error(self, ledger_port):
        class BrokenCompletion(FakeCompletionService):
            async def complete(self, history, query, data_context=None):
                raise RuntimeError("boom")

        orchestrator = make_orchestrator(ledger_port, BrokenCompletion())
        appended = await orchestrator.submit("hello")

        assert texts(appended) == [("user", "hello")]
        assert orchestrator.last_error == "Error: boom"

    @pytest.mark.asyncio
    async def test_busy_while_turn_in_flight(self, ledger_port):
        release = asyncio.Event()

        class SlowCompletion(FakeCompletionService):
            async def complete(self, history, query, data_context=None):
                await release.wait()
                return "done"

        orchestrator = make_orchestrator(ledger_port, SlowCompletion())
        first = asyncio.create_task(orchestrator.submit("hello"))
        await asyncio.sleep(0)

        assert orchestrator.is_busy
        with pytest.raises(ConversationBusyError):
            await orchestrator.submit("again")

        release.set()
        appended = await first
        assert appended[-1].content == "done"
        assert not orchestrator.is_busy
