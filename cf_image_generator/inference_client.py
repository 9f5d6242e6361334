"""
Cloudflare Workers AI 图片生成客户端

一次 call 只做一次网络往返，并把结果归类：
- 连接失败、超时、429、5xx、401/403 -> TransientError（可切换账号重试）
- 其他 4xx（请求格式错误等）        -> FatalError（换账号也没用）

参考文档: https://developers.cloudflare.com/workers-ai/models/flux-1-schnell/
"""

import base64
import binascii
import logging
import time
from typing import Any, Dict, Optional

import httpx

from .exceptions import AppError, FatalError, TransientError
from .models import DEFAULT_BASE_URL, Account

logger = logging.getLogger(__name__)

# 换账号可能解决的状态码（凭证被吊销、额度限制、服务端错误）
TRANSIENT_STATUS_CODES = {401, 403, 408, 429}


def status_error(status: int, message: str, account_index: int = None, source: str = "上游") -> AppError:
    """
    按状态码归类上游错误，图片请求和翻译请求共用

    Args:
        status: 上游 HTTP 状态码
        message: 上游错误信息
        account_index: 出错的账号序号
        source: 错误信息前缀
    """
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        return TransientError(
            f"{source}错误 {status}: {message}",
            account_index=account_index,
            upstream_status=status,
        )
    return FatalError(
        f"{source}拒绝请求 {status}: {message}",
        account_index=account_index,
        upstream_status=status,
        status=status if 400 <= status < 500 else None,
    )


class InferenceClient:
    """Workers AI 推理客户端"""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        初始化客户端

        Args:
            base_url: API 基础 URL
            timeout: 单次请求超时时间（秒）
            http_client: 外部传入的 httpx 客户端（测试时注入 MockTransport）

        自建的 httpx 客户端在首次请求时创建，aclose 之后再次请求会重新创建，
        因此同一个实例可以跨多个事件循环使用。外部传入的客户端由调用方负责关闭。
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client

    def _http_client(self) -> httpx.AsyncClient:
        if self._owns_client and (self._client is None or self._client.is_closed):
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        if self._owns_client:
            self._client = None

    async def __aenter__(self) -> "InferenceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def build_payload(
        self,
        model_path: str,
        prompt: str,
        width: int,
        height: int,
        steps: int,
    ) -> Dict[str, Any]:
        """构造请求体，flux-1-schnell 的步数字段为 steps，其余模型为 num_steps"""
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "width": width,
            "height": height,
        }
        if "flux-1-schnell" in model_path:
            payload["steps"] = steps
        else:
            payload["num_steps"] = steps
        return payload

    async def call(
        self,
        account: Account,
        model_path: str,
        prompt: str,
        width: int,
        height: int,
        steps: int,
    ) -> bytes:
        """
        调用一次图片生成

        Args:
            account: 使用的账号
            model_path: 上游模型路径
            prompt: 最终提示词
            width: 宽度
            height: 高度
            steps: 生成步数

        Returns:
            图片二进制数据
        """
        url = f"{self.base_url}/accounts/{account.account_id}/ai/run/{model_path}"
        headers = {
            "Authorization": f"Bearer {account.api_token}",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(model_path, prompt, width, height, steps)

        logger.debug(f"[账号{account.label}] 请求 {model_path}, size={width}x{height}, steps={steps}")
        start_time = time.time()

        try:
            response = await self._http_client().post(url, headers=headers, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransientError(f"请求超时: {e}", account_index=account.index)
        except httpx.TransportError as e:
            raise TransientError(f"网络连接失败: {e}", account_index=account.index)

        elapsed = time.time() - start_time
        logger.debug(f"[账号{account.label}] 响应 {response.status_code}, 耗时 {elapsed:.1f}秒")

        if response.status_code != 200:
            self._raise_for_status(account, response)

        return self._parse_image(account, response)

    def _raise_for_status(self, account: Account, response: httpx.Response) -> None:
        """把非 200 响应转换为 TransientError / FatalError"""
        raise status_error(response.status_code, self._error_message(response), account.index)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """提取错误信息，Workers AI 的格式为 {"errors": [{"code": ..., "message": ...}]}"""
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase

        if isinstance(data, dict):
            errors = data.get("errors") or []
            messages = [str(err.get("message")) for err in errors if isinstance(err, dict) and err.get("message")]
            if messages:
                return "; ".join(messages)
            if data.get("error"):
                return str(data["error"])
        return response.text[:200]

    def _parse_image(self, account: Account, response: httpx.Response) -> bytes:
        """
        解析图片响应

        - image/* 响应直接返回二进制（Stable Diffusion 系列）
        - JSON 响应 {"success": true, "result": {"image": "<base64>"}}（flux 系列）
        """
        content_type = response.headers.get("content-type", "").split(";")[0].strip()

        if content_type.startswith("image/"):
            if not response.content:
                raise TransientError("上游返回了空图片", account_index=account.index)
            return response.content

        try:
            data = response.json()
        except ValueError:
            raise TransientError(f"无法解析上游响应: {response.text[:100]}", account_index=account.index)

        if isinstance(data, dict) and data.get("success") is False:
            raise TransientError(f"上游返回失败: {self._error_message(response)}", account_index=account.index)

        result = data.get("result") if isinstance(data, dict) else None
        image_b64 = result.get("image") if isinstance(result, dict) else None
        if not image_b64:
            logger.error(f"[账号{account.label}] 响应中未找到图片: {str(data)[:200]}")
            raise TransientError("上游响应中未找到图片", account_index=account.index)

        if image_b64.startswith("data:"):
            _, image_b64 = image_b64.split(",", 1)

        try:
            return base64.b64decode(image_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransientError(f"图片 base64 解码失败: {e}", account_index=account.index)
