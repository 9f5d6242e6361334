"""
提示词预处理 - 去除首尾空白、校验非空，并按需加上增强标记

增强标记（默认 "---tl "）告诉下游流程先翻译/扩写再生成图片，
这里只做确定性的字符串变换，翻译本身由 PromptTranslator 完成。
"""

from .exceptions import InvalidArgumentError
from .models import DEFAULT_ENHANCE_MARKER


class PromptPreprocessor:
    """提示词预处理器"""

    def __init__(self, marker: str = DEFAULT_ENHANCE_MARKER):
        if not marker or not marker.strip():
            raise ValueError("增强标记不能为空")
        self.marker = marker

    def process(self, prompt: str, enhance: bool = False) -> str:
        """
        预处理提示词

        Args:
            prompt: 原始提示词
            enhance: 是否启用翻译/增强

        Returns:
            处理后的提示词
        """
        text = (prompt or "").strip()
        if enhance:
            # 已带标记的提示词不重复添加
            text = self.strip_marker(text)
        if not text:
            raise InvalidArgumentError("未找到提示词", field="prompt")

        if enhance:
            return f"{self.marker}{text}"
        return text

    def is_marked(self, prompt: str) -> bool:
        """
        判断提示词是否带增强标记

        完整标记开头，或去掉空白后的标记后面紧跟空白/结尾才算带标记，
        "---tlc" 这类以标记字符开头的普通单词不算。
        """
        if prompt.startswith(self.marker):
            return True
        head = self.marker.strip()
        if not prompt.startswith(head):
            return False
        rest = prompt[len(head):]
        return not rest or rest[0].isspace()

    def strip_marker(self, prompt: str) -> str:
        """去掉增强标记，返回提示词正文"""
        if prompt.startswith(self.marker):
            return prompt[len(self.marker):].strip()
        if self.is_marked(prompt):
            return prompt[len(self.marker.strip()):].strip()
        return prompt
