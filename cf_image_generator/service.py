"""
图片生成服务 - 组合模型注册表、提示词预处理、账号池和推理客户端

流程: 参数校验 -> 解析模型 -> 预处理提示词 -> 按账号顺序依次尝试
      -> 成功返回图片 / Fatal 立即失败 / 全部临时失败时报告上游不可用
"""

import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional, Tuple

from .account_pool import AccountPool
from .exceptions import (
    AppError,
    FatalError,
    InvalidArgumentError,
    TransientError,
    UpstreamUnavailableError,
)
from .inference_client import InferenceClient
from .model_registry import ModelRegistry
from .models import (
    Account,
    AppConfig,
    ConnectivityResult,
    GenerationRequest,
    GenerationResult,
)
from .prompt_preprocessor import PromptPreprocessor
from .translator import PromptTranslator

logger = logging.getLogger(__name__)

SIZE_PATTERN = re.compile(r"^\s*(-?\d+)\s*[xX×*]\s*(-?\d+)\s*$")
PROBE_PROMPT = "a single white dot on a black background"


class ImageGenerationService:
    """多账号图片生成服务"""

    def __init__(
        self,
        config: AppConfig,
        inference_client: Optional[InferenceClient] = None,
        translator: Optional[PromptTranslator] = None,
    ):
        """
        初始化服务

        Args:
            config: 启动时构造的全局配置
            inference_client: 推理客户端，默认按配置创建
            translator: 提示词翻译器，默认按配置创建
        """
        self.config = config
        self.registry = ModelRegistry(config.models, default_model=config.default_model)
        self.pool = AccountPool(config.accounts, policy=config.selection_policy)
        self.preprocessor = PromptPreprocessor(marker=config.enhance_marker)
        self.client = inference_client or InferenceClient(
            base_url=config.base_url,
            timeout=config.request_timeout,
        )
        self.translator = translator or PromptTranslator(
            model=config.translate_model,
            preprocessor=self.preprocessor,
            base_url=config.base_url,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.translator.aclose()

    async def __aenter__(self) -> "ImageGenerationService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # 参数校验
    # ------------------------------------------------------------------

    def parse_size(self, size: str) -> Tuple[int, int]:
        """解析 "{width}x{height}" 格式的尺寸"""
        match = SIZE_PATTERN.match(size or "")
        if not match:
            raise InvalidArgumentError(f"无效的尺寸: {size!r}（应为 宽x高）", field="size")
        return int(match.group(1)), int(match.group(2))

    def build_request(
        self,
        prompt: str,
        model_id: Optional[str],
        size: str,
        steps: Optional[int] = None,
        enhance: bool = False,
    ) -> GenerationRequest:
        """校验参数并构造请求，任何网络调用之前完成"""
        cfg = self.config

        if not prompt or not prompt.strip():
            raise InvalidArgumentError("未找到提示词", field="prompt")

        model_id, _ = self.registry.resolve_id(model_id)

        width, height = self.parse_size(size)
        for name, value in (("width", width), ("height", height)):
            if value <= 0:
                raise InvalidArgumentError(f"{name} 必须是正整数: {value}", field=name)
            if not cfg.min_dimension <= value <= cfg.max_dimension:
                raise InvalidArgumentError(
                    f"{name} 必须在 [{cfg.min_dimension}, {cfg.max_dimension}] 范围内: {value}",
                    field=name,
                )

        if steps is None:
            steps = cfg.default_steps
        if isinstance(steps, bool) or not isinstance(steps, int):
            raise InvalidArgumentError(f"生成步数必须是整数: {steps!r}", field="steps")
        if not cfg.min_steps <= steps <= cfg.max_steps:
            raise InvalidArgumentError(
                f"生成步数必须在 [{cfg.min_steps}, {cfg.max_steps}] 范围内: {steps}",
                field="steps",
            )

        return GenerationRequest(
            prompt=prompt,
            model_id=model_id,
            width=width,
            height=height,
            steps=steps,
            enhance=enhance,
        )

    # ------------------------------------------------------------------
    # 生成
    # ------------------------------------------------------------------

    async def generate_image(
        self,
        prompt: str,
        model_id: Optional[str],
        size: str,
        steps: Optional[int] = None,
        enhance: bool = False,
    ) -> GenerationResult:
        """
        生成图片

        Args:
            prompt: 提示词
            model_id: 模型 ID（为空时使用默认模型）
            size: 尺寸，格式 "{width}x{height}"
            steps: 生成步数（为空时使用默认步数）
            enhance: 是否翻译/增强提示词

        Returns:
            GenerationResult

        Raises:
            AppError: 所有失败都归一化为 AppError 子类
        """
        request = self.build_request(prompt, model_id, size, steps, enhance)
        model_path = self.registry.resolve(request.model_id)
        final_prompt = self.preprocessor.process(request.prompt, enhance=request.enhance)

        logger.info(
            f"🎨 开始生成: model={request.model_id}, size={request.width}x{request.height}, "
            f"steps={request.steps}, enhance={request.enhance}"
        )
        return await self._dispatch(request, model_path, final_prompt)

    async def _dispatch(
        self,
        request: GenerationRequest,
        model_path: str,
        prompt: str,
    ) -> GenerationResult:
        """按账号顺序依次尝试，遇到 Fatal 立即停止"""
        last_error: Optional[AppError] = None
        attempts = 0

        for account in self.pool.candidates():
            attempts += 1
            try:
                image_bytes, used_prompt = await self._attempt(
                    account, model_path, prompt, request.width, request.height, request.steps
                )
            except TransientError as e:
                last_error = e
                logger.warning(f"[账号{account.label}] ⚠️ 临时失败，切换下一个账号: {e.message}")
                continue
            except FatalError as e:
                logger.error(f"[账号{account.label}] ❌ 请求失败，不再重试: {e.message}")
                raise

            logger.info(f"[账号{account.label}] ✅ 生成成功 ({attempts}/{len(self.pool)})")
            return GenerationResult(
                image_bytes=image_bytes,
                model_id=request.model_id,
                model_path=model_path,
                prompt=used_prompt,
                account_index=account.index,
                attempts=attempts,
            )

        reason = last_error.message if last_error else "无可用账号"
        logger.error(f"❌ 所有账号均失败 ({attempts}个): {reason}")
        raise UpstreamUnavailableError(
            f"所有账号均不可用: {reason}",
            attempts=attempts,
            last_error=last_error,
        )

    async def _attempt(
        self,
        account: Account,
        model_path: str,
        prompt: str,
        width: int,
        height: int,
        steps: int,
    ) -> Tuple[bytes, str]:
        """
        在单个账号上完成一次尝试（翻译 + 生成），整体受超时约束

        取消信号（asyncio.CancelledError）不会被捕获，会直接传递到进行中的请求。
        """
        timeout = self.config.request_timeout
        if self.preprocessor.is_marked(prompt) and self.translator.is_enabled():
            timeout += self.translator.timeout

        async def run() -> Tuple[bytes, str]:
            final_prompt = await self.translator.resolve(account, prompt)
            image = await self.client.call(account, model_path, final_prompt, width, height, steps)
            return image, final_prompt

        try:
            return await asyncio.wait_for(run(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientError(f"请求超时（{timeout:.0f}秒）", account_index=account.index)
        except AppError:
            raise
        except Exception as e:
            logger.exception(f"[账号{account.label}] 未知错误: {e}")
            raise FatalError(f"未知错误: {e}", account_index=account.index, status=500)

    async def handle_generate(
        self,
        prompt: str,
        model_id: Optional[str],
        size: str,
        steps: Optional[int] = None,
        enhance: bool = False,
    ) -> Tuple[Dict[str, Any], int]:
        """
        供展示层调用: 返回 (响应数据, 状态码)

        成功: ({"image": data_url, ...}, 200)
        失败: ({"error": message, "kind": ...}, status)
        """
        try:
            result = await self.generate_image(prompt, model_id, size, steps, enhance)
        except AppError as e:
            return {"error": f"生成图片失败: {e.message}", "kind": e.kind.value}, e.status

        payload = result.to_dict()
        payload["image"] = result.to_data_url()
        return payload, 200

    # ------------------------------------------------------------------
    # 连接测试
    # ------------------------------------------------------------------

    async def test_connection(self) -> ConnectivityResult:
        """
        用最小尺寸和最少步数对第一个账号发一次探测请求

        只报告连通性，不返回图片数据，也不抛出上游错误。
        """
        cfg = self.config
        account = self.pool.first()
        model_id = self.registry.default_model or self.registry.model_ids()[0]
        model_path = self.registry.resolve(model_id)

        start_time = time.time()
        try:
            await self._attempt(
                account,
                model_path,
                PROBE_PROMPT,
                cfg.min_dimension,
                cfg.min_dimension,
                cfg.min_steps,
            )
        except AppError as e:
            logger.warning(f"[账号{account.label}] 连接测试失败: {e.message}")
            return ConnectivityResult(
                connected=False,
                message=e.message,
                account_index=account.index,
            )

        latency = time.time() - start_time
        logger.info(f"[账号{account.label}] 连接测试成功，耗时 {latency:.1f}秒")
        return ConnectivityResult(
            connected=True,
            message="已连接",
            account_index=account.index,
            latency=latency,
        )

    async def test_cf_ai_connection(self) -> None:
        """连接测试，失败时抛出 AppError"""
        result = await self.test_connection()
        if not result.connected:
            raise UpstreamUnavailableError(result.message, attempts=1)

    # ------------------------------------------------------------------
    # 展示用配置摘要
    # ------------------------------------------------------------------

    def config_summary(self) -> Dict[str, Any]:
        cfg = self.config
        return {
            "API_KEY": bool(cfg.api_key),
            "CF_TRANSLATE_MODEL": cfg.translate_model,
            "CF_ACCOUNT_LIST": len(self.pool) > 0,
            "CUSTOMER_MODEL_MAP": len(self.registry) > 0,
            "FLUX_NUM_STEPS": cfg.default_steps,
        }

    def list_models(self) -> List[Dict[str, str]]:
        return [{"id": model_id, "path": path} for model_id, path in self.registry.items()]

    # ------------------------------------------------------------------
    # 同步版本（CLI 使用）
    #
    # 每次调用都在新的事件循环中运行，结束时释放绑定该循环的连接；
    # 客户端在下次请求时重新创建，所以同一个服务可以反复调用。
    # ------------------------------------------------------------------

    def generate_image_sync(
        self,
        prompt: str,
        model_id: Optional[str],
        size: str,
        steps: Optional[int] = None,
        enhance: bool = False,
    ) -> GenerationResult:
        """同步版本的生成方法"""
        return asyncio.run(self._run_sync(self.generate_image(prompt, model_id, size, steps, enhance)))

    def test_connection_sync(self) -> ConnectivityResult:
        """同步版本的连接测试"""
        return asyncio.run(self._run_sync(self.test_connection()))

    async def _run_sync(self, coro):
        try:
            return await coro
        finally:
            await self.aclose()
