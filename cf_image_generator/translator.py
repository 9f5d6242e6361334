"""
提示词翻译/增强 - 处理带增强标记的提示词

通过 Workers AI 的 OpenAI 兼容接口调用翻译模型，把提示词翻译成英文并扩写为
适合图片生成的描述。失败按与 InferenceClient 相同的规则归类为
TransientError / FatalError，在同一次账号尝试内完成。
"""

import logging
from typing import Callable, Dict, Optional

import openai
from jinja2 import Environment, StrictUndefined
from openai import AsyncOpenAI

from .exceptions import TransientError
from .inference_client import status_error
from .models import DEFAULT_BASE_URL, Account
from .prompt_preprocessor import PromptPreprocessor

logger = logging.getLogger(__name__)

TRANSLATE_INSTRUCTION = """\
You are a prompt engineer for a text-to-image model.
Translate the user's description into English if it is not English already,
then expand it into one detailed image prompt (subject, style, lighting, composition).
{% if max_words %}Keep it under {{ max_words }} words. {% endif %}\
Reply with the prompt only, without quotes or explanations."""

_jinja_env = Environment(autoescape=False, undefined=StrictUndefined)


ClientFactory = Callable[[Account], AsyncOpenAI]


class PromptTranslator:
    """翻译/增强带标记的提示词"""

    def __init__(
        self,
        model: str,
        preprocessor: PromptPreprocessor,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        temperature: float = 0.3,
        max_words: Optional[int] = 80,
        client_factory: Optional[ClientFactory] = None,
    ):
        """
        初始化翻译器

        Args:
            model: 翻译模型（如 @cf/meta/llama-3.1-8b-instruct），为空时只去掉标记
            preprocessor: 用于识别和去除增强标记
            base_url: API 基础 URL
            timeout: 请求超时时间（秒）
            temperature: 生成温度
            max_words: 扩写后提示词的最大词数
            client_factory: 按账号创建 AsyncOpenAI 客户端（测试时注入）
        """
        self.model = model
        self.preprocessor = preprocessor
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.instruction = _jinja_env.from_string(TRANSLATE_INSTRUCTION).render(max_words=max_words)
        self._client_factory = client_factory or self._default_client
        self._clients: Dict[int, AsyncOpenAI] = {}
        self._warned = False

    def is_enabled(self) -> bool:
        return bool(self.model)

    def _default_client(self, account: Account) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=account.api_token,
            base_url=f"{self.base_url}/accounts/{account.account_id}/ai/v1",
            timeout=self.timeout,
            max_retries=0,
        )

    def _client_for(self, account: Account) -> AsyncOpenAI:
        client = self._clients.get(account.index)
        if client is None:
            client = self._client_factory(account)
            self._clients[account.index] = client
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    async def resolve(self, account: Account, prompt: str) -> str:
        """
        得到最终发给图片模型的提示词

        Args:
            account: 本次尝试使用的账号
            prompt: 预处理后的提示词（可能带增强标记）

        Returns:
            不带标记的最终提示词
        """
        if not self.preprocessor.is_marked(prompt):
            return prompt

        body = self.preprocessor.strip_marker(prompt)
        if not self.is_enabled():
            if not self._warned:
                logger.warning("未配置翻译模型，增强标记将被忽略")
                self._warned = True
            return body

        translated = await self.translate(account, body)
        if not translated:
            logger.warning(f"[账号{account.label}] 翻译结果为空，使用原始提示词")
            return body

        logger.info(f"[账号{account.label}] 📝 提示词已增强: {translated[:60]}...")
        return translated

    async def translate(self, account: Account, text: str) -> str:
        """调用翻译模型"""
        client = self._client_for(account)
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.instruction},
                    {"role": "user", "content": text},
                ],
                temperature=self.temperature,
            )
        except openai.APIConnectionError as e:
            # APITimeoutError 是 APIConnectionError 的子类
            raise TransientError(f"翻译请求失败: {e}", account_index=account.index)
        except openai.APIStatusError as e:
            raise status_error(e.status_code, e.message, account.index, source="翻译上游")

        if not completion.choices:
            return ""
        content = completion.choices[0].message.content or ""
        return content.strip().strip('"').strip()
