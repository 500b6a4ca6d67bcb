"""
对话补全模块
没有识别出表格操作时，把对话交给兼容 OpenAI 格式的大语言模型回答
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from excel_assistant.models import ConversationMessage, SelectionSnapshot


CREDENTIAL_MISSING_MESSAGE = "Error: API key configuration is missing. Please check the setup."

# 系统提示词：要求模型确认操作结果而不是给出手动步骤
SYSTEM_PROMPT = """You are an Excel AI assistant that EXECUTES ACTIONS directly rather than explaining how to do them.

IMPORTANT RULES:
1. Keep responses under 100 words
2. When asked to perform an action like summing cells, creating pivot tables, or making charts, reply with CONFIRMATION that you've done it, not instructions.
3. NEVER give manual steps or formulas unless specifically asked for "how to" instructions
4. Assume all actions are automatically executed by the assistant, not manually by the user

Example good response: "I've summed the values in the Amount column and placed the result in cell B7."
Example bad response: "To sum the values, you can use the formula =SUM(B2:B6) in cell B7."

{selection_note}"""

SELECTION_NOTE = "The user has selected Excel data for you to work with."
NO_SELECTION_NOTE = "Ask the user to select some data first to perform operations on it."


class CompletionService(ABC):
    """对话补全服务：任何情况下都返回字符串，不向外抛出异常"""

    @abstractmethod
    async def complete(
        self,
        history: Sequence[ConversationMessage],
        query: str,
        data_context: Optional[SelectionSnapshot] = None
    ) -> str:
        """根据历史消息、当前问题和选区数据生成回复"""


def build_data_context(snapshot: SelectionSnapshot) -> str:
    """将选区格式化为提示词中的数据说明"""
    lines = [
        f"Selected Range: {snapshot.range_address}",
        f"Data ({snapshot.row_count} rows × {snapshot.column_count} columns):",
        json.dumps(snapshot.values, ensure_ascii=False, default=str),
    ]
    if snapshot.has_headers:
        lines.append("First row appears to contain headers.")
    return "\n".join(lines)


class OpenAICompletionService(CompletionService):
    """
    基于 OpenAI 兼容接口的补全服务

    支持 OpenAI 以及其他兼容 OpenAI 格式的 API（通过 api_base 指定）
    """

    def __init__(
        self,
        api_key: str = "",
        api_base: Optional[str] = None,
        model: str = "gpt-4-turbo",
        temperature: float = 0.5,
        max_tokens: int = 800,
        history_window: int = 10,
        client: Optional[AsyncOpenAI] = None
    ):
        """
        初始化补全服务

        Args:
            api_key: API 密钥，为空时所有请求直接返回配置缺失提示
            api_base: API 基础地址
            model: 模型名称
            temperature: 采样温度
            max_tokens: 回复最大 token 数
            history_window: 发送给模型的历史消息条数
            client: 已创建的客户端（测试时注入）
        """
        self.api_key = api_key
        self.api_base = api_base
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.history_window = history_window

        self.client = client
        if self.client is None and self.api_key:
            self.client = AsyncOpenAI(api_key=self.api_key, base_url=self.api_base)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.client is not None

    def build_messages(
        self,
        history: Sequence[ConversationMessage],
        query: str,
        data_context: Optional[SelectionSnapshot] = None
    ) -> List[Dict[str, Any]]:
        """构建发送给模型的消息列表"""
        has_data = data_context is not None and not data_context.is_empty
        system_prompt = SYSTEM_PROMPT.format(
            selection_note=SELECTION_NOTE if has_data else NO_SELECTION_NOTE
        )

        content = query
        if has_data:
            content = f"{query}\n\nSelected Excel Data:\n{build_data_context(data_context)}"

        messages = [{"role": "system", "content": system_prompt}]
        recent = list(history)[-self.history_window:] if self.history_window > 0 else []
        messages.extend({"role": m.role, "content": m.content} for m in recent)
        messages.append({"role": "user", "content": content})
        return messages

    async def complete(
        self,
        history: Sequence[ConversationMessage],
        query: str,
        data_context: Optional[SelectionSnapshot] = None
    ) -> str:
        if not self.is_configured:
            print("⚠️ 未配置 OPENAI_API_KEY，跳过模型调用")
            return CREDENTIAL_MISSING_MESSAGE

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(history, query, data_context),
                temperature=self.temperature,
                max_tokens=self.max_tokens
            )
            return response.choices[0].message.content or ""
        except Exception as e:
            print(f"❌ 模型调用失败: {e}")
            return f"Error: {e}"
