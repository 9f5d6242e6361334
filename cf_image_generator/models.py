"""
数据模型定义
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_ENHANCE_MARKER = "---tl "
DEFAULT_MODEL_ID = "FLUX.1-Schnell-CF"


class SelectionPolicy(Enum):
    """账号选择策略"""
    FIRST_AVAILABLE = "first_available"
    ROUND_ROBIN = "round_robin"


@dataclass(frozen=True)
class Account:
    """上游账号（Cloudflare account id + API token）"""
    account_id: str
    api_token: str = field(repr=False)
    index: int = 0

    @property
    def label(self) -> str:
        """日志中使用的账号标识，不包含 token"""
        return f"#{self.index + 1}({self.account_id[:8]})"


@dataclass
class AppConfig:
    """全局配置，启动时构造一次，之后只读"""
    accounts: List[Account]
    models: Dict[str, str]
    api_key: str = ""
    translate_model: str = ""
    default_model: Optional[str] = None
    default_steps: int = 4
    min_steps: int = 1
    max_steps: int = 8
    min_dimension: int = 256
    max_dimension: int = 2048
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = 60.0
    selection_policy: SelectionPolicy = SelectionPolicy.FIRST_AVAILABLE
    enhance_marker: str = DEFAULT_ENHANCE_MARKER


@dataclass
class GenerationRequest:
    """单次生成请求"""
    prompt: str
    model_id: str
    width: int
    height: int
    steps: int
    enhance: bool = False


@dataclass
class GenerationResult:
    """生成结果"""
    image_bytes: bytes = field(repr=False)
    model_id: str
    model_path: str
    prompt: str
    account_index: int
    attempts: int = 1

    @property
    def content_type(self) -> str:
        """根据文件头推断图片类型"""
        data = self.image_bytes
        if data.startswith(b"\xff\xd8\xff"):
            return "image/jpeg"
        if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
            return "image/webp"
        return "image/png"

    def to_base64(self) -> str:
        return base64.b64encode(self.image_bytes).decode("utf-8")

    def to_data_url(self) -> str:
        """转换为 data URL (data:image/png;base64,...)"""
        return f"data:{self.content_type};base64,{self.to_base64()}"

    def to_dict(self) -> Dict[str, Any]:
        """转换为可序列化的字典（不含图片数据）"""
        return {
            "model_id": self.model_id,
            "model_path": self.model_path,
            "prompt": self.prompt,
            "account_index": self.account_index,
            "attempts": self.attempts,
            "content_type": self.content_type,
            "size_bytes": len(self.image_bytes),
        }


@dataclass
class ConnectivityResult:
    """连接测试结果"""
    connected: bool
    message: str = ""
    account_index: Optional[int] = None
    latency: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "message": self.message,
            "account_index": self.account_index,
            "latency": self.latency,
        }
