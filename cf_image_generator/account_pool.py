"""
账号池 - 保存有序的上游账号列表，并按选择策略枚举候选账号

账号池本身不做重试，只负责给出候选顺序；切换账号重试由
ImageGenerationService 完成。
"""

import itertools
import logging
from typing import Any, Iterable, Iterator, List, Sequence, Union

from .exceptions import ConfigurationError
from .models import Account, SelectionPolicy

logger = logging.getLogger(__name__)


def parse_account(entry: Union[str, dict], index: int) -> Account:
    """
    解析单个账号配置

    支持两种格式：
    - {"account_id": "...", "token": "..."}（token 也可写作 api_token）
    - "account_id:token"
    """
    if isinstance(entry, str):
        account_id, sep, token = entry.partition(":")
        if not sep:
            raise ConfigurationError(f"账号格式错误（应为 account_id:token）: 第{index + 1}项", field="accounts")
    elif isinstance(entry, dict):
        account_id = entry.get("account_id") or entry.get("accountId") or ""
        token = entry.get("token") or entry.get("api_token") or ""
    else:
        raise ConfigurationError(f"账号格式错误: 第{index + 1}项", field="accounts")

    account_id = str(account_id).strip()
    token = str(token).strip()
    if not account_id or not token:
        raise ConfigurationError(f"账号缺少 account_id 或 token: 第{index + 1}项", field="accounts")

    return Account(account_id=account_id, api_token=token, index=index)


class AccountPool:
    """上游账号池"""

    def __init__(
        self,
        accounts: Sequence[Account],
        policy: SelectionPolicy = SelectionPolicy.FIRST_AVAILABLE,
    ):
        """
        初始化账号池

        Args:
            accounts: 有序账号列表，不能为空
            policy: 选择策略
        """
        if not accounts:
            raise ConfigurationError("账号列表不能为空", field="accounts")

        self._accounts = tuple(accounts)
        self.policy = policy
        self._counter = itertools.count()

    @classmethod
    def from_config(
        cls,
        entries: Iterable[Any],
        policy: SelectionPolicy = SelectionPolicy.FIRST_AVAILABLE,
    ) -> "AccountPool":
        """从配置项列表构造账号池"""
        accounts = [parse_account(entry, i) for i, entry in enumerate(entries)]
        logger.debug(f"加载 {len(accounts)} 个账号, 策略={policy.value}")
        return cls(accounts, policy=policy)

    @property
    def accounts(self) -> List[Account]:
        return list(self._accounts)

    def first(self) -> Account:
        return self._accounts[0]

    def candidates(self) -> Iterator[Account]:
        """
        枚举一次请求的候选账号，每个账号恰好出现一次

        first_available 总是从第一个账号开始；round_robin 每次调用起点后移一位。
        """
        size = len(self._accounts)
        start = 0
        if self.policy is SelectionPolicy.ROUND_ROBIN:
            start = next(self._counter) % size

        for offset in range(size):
            yield self._accounts[(start + offset) % size]

    def __len__(self) -> int:
        return len(self._accounts)

    def __iter__(self) -> Iterator[Account]:
        return iter(self._accounts)
