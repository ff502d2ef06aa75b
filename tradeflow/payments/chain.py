"""On-chain collaborator used to build and broadcast self-custody payments."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from tradeflow.payments.provisional import ProvisionalPayment

SourceRef = Union[int, str]


class FeeTier(str, Enum):
    REGULAR = "regular"
    PRIORITY = "priority"


class ChainBackend(ABC):
    """Wallet/chain access for one user. Amounts and fees are in base units."""

    @abstractmethod
    async def estimate_fee(self, coin: str, tier: FeeTier, is_token: bool) -> int:
        ...

    @abstractmethod
    async def get_balance(self, coin: str, source: SourceRef) -> int:
        ...

    @abstractmethod
    def is_valid_address(self, coin: str, address: str) -> bool:
        ...

    @abstractmethod
    async def get_receive_address(self, coin: str, source: SourceRef) -> str:
        """Address the user can be refunded to for ``source``."""

    @abstractmethod
    async def sign_and_publish(self, payment: ProvisionalPayment) -> str:
        """Sign and broadcast, returning the transaction hash."""
