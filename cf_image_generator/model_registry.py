"""
模型注册表 - 将用户可见的模型 ID 解析为上游模型路径
"""

from typing import Dict, Iterator, List, Optional, Tuple

from .exceptions import ConfigurationError, InvalidArgumentError


class ModelRegistry:
    """模型 ID -> 上游模型路径"""

    def __init__(self, models: Dict[str, str], default_model: Optional[str] = None):
        """
        初始化模型注册表

        Args:
            models: 模型 ID 到上游路径的映射（如 FLUX.1-Schnell-CF -> @cf/black-forest-labs/flux-1-schnell）
            default_model: 未指定模型时使用的默认 ID
        """
        if not models:
            raise ConfigurationError("模型映射不能为空", field="models")

        for model_id, path in models.items():
            if not model_id or not path:
                raise ConfigurationError(f"无效的模型映射: {model_id!r} -> {path!r}", field="models")

        if default_model is not None and default_model not in models:
            raise ConfigurationError(f"默认模型不在模型映射中: {default_model}", field="default_model")

        self._models = dict(models)
        self.default_model = default_model

    def resolve(self, model_id: Optional[str]) -> str:
        """
        解析模型 ID

        Args:
            model_id: 模型 ID，为空时使用默认模型

        Returns:
            上游模型路径
        """
        if not model_id:
            if self.default_model is None:
                raise InvalidArgumentError("未指定模型", field="model_id")
            model_id = self.default_model

        path = self._models.get(model_id)
        if path is None:
            raise InvalidArgumentError(f"无效的模型: {model_id}", field="model_id")
        return path

    def resolve_id(self, model_id: Optional[str]) -> Tuple[str, str]:
        """解析模型 ID，同时返回实际使用的 ID"""
        path = self.resolve(model_id)
        return (model_id or self.default_model), path

    def model_ids(self) -> List[str]:
        return list(self._models)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._models.items())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)
