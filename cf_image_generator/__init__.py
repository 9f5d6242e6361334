"""
CF Image Generator - Cloudflare Workers AI 多账号图片生成服务

- 模型 ID 解析为上游模型路径
- 提示词预处理（可选翻译/增强）
- 多账号依次尝试，临时失败自动切换账号
- 连接状态检测
"""

__version__ = "1.0.0"

from .models import (
    SelectionPolicy,
    Account,
    AppConfig,
    GenerationRequest,
    GenerationResult,
    ConnectivityResult,
)
from .exceptions import (
    ErrorKind,
    AppError,
    InvalidArgumentError,
    TransientError,
    FatalError,
    UpstreamUnavailableError,
    ConfigurationError,
)
from .config import ConfigManager
from .model_registry import ModelRegistry
from .prompt_preprocessor import PromptPreprocessor
from .account_pool import AccountPool
from .inference_client import InferenceClient
from .translator import PromptTranslator
from .service import ImageGenerationService

__all__ = [
    # Enums
    "SelectionPolicy",
    "ErrorKind",
    # Data Models
    "Account",
    "AppConfig",
    "GenerationRequest",
    "GenerationResult",
    "ConnectivityResult",
    # Exceptions
    "AppError",
    "InvalidArgumentError",
    "TransientError",
    "FatalError",
    "UpstreamUnavailableError",
    "ConfigurationError",
    # Components
    "ConfigManager",
    "ModelRegistry",
    "PromptPreprocessor",
    "AccountPool",
    "InferenceClient",
    "PromptTranslator",
    "ImageGenerationService",
]
