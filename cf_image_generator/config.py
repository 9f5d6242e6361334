"""
配置管理器 - 负责加载和验证配置

配置来源：config.json + 环境变量（环境变量优先）。
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .account_pool import AccountPool
from .exceptions import ConfigurationError
from .models import (
    DEFAULT_BASE_URL,
    DEFAULT_ENHANCE_MARKER,
    DEFAULT_MODEL_ID,
    AppConfig,
    SelectionPolicy,
)

logger = logging.getLogger(__name__)


class ConfigManager:
    """配置管理器"""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        初始化配置管理器

        Args:
            config_path: 配置文件路径 (config.json)，不存在时只读取环境变量
            environ: 环境变量来源，默认 os.environ
        """
        self.config_path = config_path
        self.environ = os.environ if environ is None else environ
        self._config: Optional[AppConfig] = None

    def _load_json(self, path: Path) -> Dict[str, Any]:
        """加载JSON文件"""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"JSON解析错误: {path}, {e}")
        except (UnicodeDecodeError, OSError) as e:
            raise ConfigurationError(f"读取配置文件失败: {path}, {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"配置文件根对象必须是字典: {path}")
        return data

    def _env_json(self, name: str) -> Any:
        """读取 JSON 格式的环境变量"""
        raw = self.environ.get(name)
        if raw is None or not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"环境变量 {name} 不是合法的 JSON: {e}", field=name)

    def _number(self, value: Any, field: str, cast=int):
        try:
            return cast(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"配置项 {field} 必须是数字: {value!r}", field=field)

    def load(self) -> AppConfig:
        """加载并验证配置"""
        if self._config:
            return self._config

        data: Dict[str, Any] = {}
        if self.config_path and Path(self.config_path).exists():
            data = self._load_json(Path(self.config_path))
        elif self.config_path:
            logger.debug(f"配置文件不存在，仅使用环境变量: {self.config_path}")

        env = self.environ

        policy_raw = data.get("selection_policy", SelectionPolicy.FIRST_AVAILABLE.value)
        try:
            policy = SelectionPolicy(policy_raw)
        except ValueError:
            raise ConfigurationError(f"无效的账号选择策略: {policy_raw}", field="selection_policy")

        account_entries = self._env_json("CF_ACCOUNT_LIST")
        if account_entries is None:
            account_entries = data.get("accounts", [])
        if not isinstance(account_entries, list):
            raise ConfigurationError("账号列表必须是数组", field="accounts")
        if not account_entries:
            raise ConfigurationError("账号列表不能为空 (CF_ACCOUNT_LIST)", field="accounts")
        accounts = AccountPool.from_config(account_entries, policy=policy).accounts

        models = self._env_json("CUSTOMER_MODEL_MAP")
        if models is None:
            models = data.get("models", {})
        if not isinstance(models, dict):
            raise ConfigurationError("模型映射必须是对象", field="models")
        if not models:
            raise ConfigurationError("模型映射不能为空 (CUSTOMER_MODEL_MAP)", field="models")
        models = {str(k): str(v) for k, v in models.items()}

        default_model = env.get("CF_DEFAULT_MODEL") or data.get("default_model")
        if not default_model and DEFAULT_MODEL_ID in models:
            default_model = DEFAULT_MODEL_ID
        if default_model and default_model not in models:
            raise ConfigurationError(f"默认模型不在模型映射中: {default_model}", field="default_model")

        config = AppConfig(
            accounts=accounts,
            models=models,
            api_key=env.get("API_KEY") or data.get("api_key", ""),
            translate_model=env.get("CF_TRANSLATE_MODEL") or data.get("translate_model", ""),
            default_model=default_model or None,
            default_steps=self._number(env.get("FLUX_NUM_STEPS") or data.get("default_steps", 4), "default_steps"),
            min_steps=self._number(data.get("min_steps", 1), "min_steps"),
            max_steps=self._number(data.get("max_steps", 8), "max_steps"),
            min_dimension=self._number(data.get("min_dimension", 256), "min_dimension"),
            max_dimension=self._number(data.get("max_dimension", 2048), "max_dimension"),
            base_url=env.get("CF_API_BASE_URL") or data.get("base_url", DEFAULT_BASE_URL),
            request_timeout=self._number(
                env.get("CF_REQUEST_TIMEOUT") or data.get("request_timeout", 60.0), "request_timeout", float
            ),
            selection_policy=policy,
            enhance_marker=data.get("enhance_marker", DEFAULT_ENHANCE_MARKER),
        )

        errors = self.validate(config)
        if errors:
            raise ConfigurationError("; ".join(errors))

        self._config = config
        return config

    @staticmethod
    def validate(config: AppConfig) -> List[str]:
        """验证配置取值范围，返回错误列表"""
        errors = []

        if config.min_steps < 1:
            errors.append("min_steps 必须大于0")
        if config.max_steps < config.min_steps:
            errors.append("max_steps 不能小于 min_steps")
        if not config.min_steps <= config.default_steps <= config.max_steps:
            errors.append(f"默认步数 {config.default_steps} 不在 [{config.min_steps}, {config.max_steps}] 范围内")
        if config.min_dimension < 1:
            errors.append("min_dimension 必须大于0")
        if config.max_dimension < config.min_dimension:
            errors.append("max_dimension 不能小于 min_dimension")
        if config.request_timeout <= 0:
            errors.append("request_timeout 必须大于0")
        if not config.enhance_marker.strip():
            errors.append("enhance_marker 不能为空")

        return errors
