"""
Pytest configuration and fixtures for cf_image_generator tests.
"""

import asyncio
from typing import List, Optional, Union

import pytest

from cf_image_generator.models import Account, AppConfig

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16

MODELS = {
    "FLUX.1-Schnell-CF": "@cf/black-forest-labs/flux-1-schnell",
    "SDXL-Base-CF": "@cf/stabilityai/stable-diffusion-xl-base-1.0",
}


def make_accounts(count: int) -> List[Account]:
    return [Account(account_id=f"acct{i}", api_token=f"token{i}", index=i) for i in range(count)]


def make_config(account_count: int = 3, **overrides) -> AppConfig:
    values = dict(
        accounts=make_accounts(account_count),
        models=dict(MODELS),
        default_model="FLUX.1-Schnell-CF",
        default_steps=4,
        min_steps=1,
        max_steps=8,
        min_dimension=256,
        max_dimension=2048,
        request_timeout=5.0,
    )
    values.update(overrides)
    return AppConfig(**values)


Outcome = Union[bytes, Exception, float]


class SpyInferenceClient:
    """Records calls and replays scripted outcomes per attempt.

    An outcome is image bytes, an exception to raise, or a float number of
    seconds to sleep before returning PNG bytes.
    """

    def __init__(self, outcomes: Optional[List[Outcome]] = None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.cancelled = False
        self.closed = False

    async def call(self, account, model_path, prompt, width, height, steps):
        self.calls.append(
            {
                "account": account.index,
                "model_path": model_path,
                "prompt": prompt,
                "width": width,
                "height": height,
                "steps": steps,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else PNG_BYTES
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, float):
            try:
                await asyncio.sleep(outcome)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
            return PNG_BYTES
        return outcome

    async def aclose(self):
        self.closed = True

    @property
    def accounts_called(self) -> List[int]:
        return [c["account"] for c in self.calls]


@pytest.fixture
def app_config() -> AppConfig:
    return make_config()


@pytest.fixture
def accounts() -> List[Account]:
    return make_accounts(3)
