"""
OpenAICompletionService 单元测试
使用假的客户端，不发出真实请求
"""

from types import SimpleNamespace

import pytest

from excel_assistant.core.completion_service import (
    CREDENTIAL_MISSING_MESSAGE,
    NO_SELECTION_NOTE,
    SELECTION_NOTE,
    OpenAICompletionService,
)
from excel_assistant.models import ConversationMessage, SelectionSnapshot


class FakeCompletions:
    def __init__(self, content="Done!", error=None):
        self.content = content
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def make_history(count):
    return [
        ConversationMessage(role="user" if i % 2 else "assistant", content=f"m{i}")
        for i in range(count)
    ]


class TestOpenAICompletionService:
    """补全服务测试用例"""

    @pytest.fixture
    def snapshot(self):
        return SelectionSnapshot(
            range_address="Data!A1:B2",
            values=[["Name", "Qty"], ["a", 1]],
            row_count=2,
            column_count=2,
            has_headers=True
        )

    @pytest.mark.asyncio
    async def test_missing_credential(self):
        service = OpenAICompletionService(api_key="")
        assert not service.is_configured
        assert await service.complete([], "hello") == CREDENTIAL_MISSING_MESSAGE

    @pytest.mark.asyncio
    async def test_request_parameters(self, snapshot):
        completions = FakeCompletions()
        service = OpenAICompletionService(
            api_key="sk-test",
            model="gpt-test",
            temperature=0.2,
            max_tokens=100,
            client=fake_client(completions)
        )

        reply = await service.complete(make_history(3), "what is this?", snapshot)

        assert reply == "Done!"
        request = completions.requests[0]
        assert request["model"] == "gpt-test"
        assert request["temperature"] == 0.2
        assert request["max_tokens"] == 100

    def test_messages_with_selection(self, snapshot):
        service = OpenAICompletionService(api_key="sk-test", client=fake_client(FakeCompletions()))
        messages = service.build_messages(make_history(2), "what is this?", snapshot)

        assert messages[0]["role"] == "system"
        assert SELECTION_NOTE in messages[0]["content"]
        assert [m["content"] for m in messages[1:3]] == ["m0", "m1"]

        user_content = messages[-1]["content"]
        assert user_content.startswith("what is this?\n\nSelected Excel Data:\n")
        assert "Selected Range: Data!A1:B2" in user_content
        assert "Data (2 rows × 2 columns):" in user_content
        assert '[["Name", "Qty"], ["a", 1]]' in user_content
        assert "First row appears to contain headers." in user_content

    def test_messages_without_selection(self):
        service = OpenAICompletionService(api_key="sk-test", client=fake_client(FakeCompletions()))
        messages = service.build_messages([], "hi")

        assert NO_SELECTION_NOTE in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "hi"}

    def test_history_window(self):
        service = OpenAICompletionService(
            api_key="sk-test",
            history_window=10,
            client=fake_client(FakeCompletions())
        )
        messages = service.build_messages(make_history(15), "hi")

        # system + 10 条历史 + 当前问题
        assert len(messages) == 12
        assert messages[1]["content"] == "m5"

    @pytest.mark.asyncio
    async def test_api_error_returns_message(self):
        completions = FakeCompletions(error=RuntimeError("rate limited"))
        service = OpenAICompletionService(api_key="sk-test", client=fake_client(completions))

        assert await service.complete([], "hi") == "Error: rate limited"
