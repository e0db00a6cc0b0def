"""
Exchange adapter interface.

Adapters retry transient failures internally and raise
TransientExchangeError once retries are exhausted. Rejections the exchange
will keep returning (bad symbol, margin, size) raise BusinessRejection.
"""
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from ..custody import Signer
from ..schemas import AccountState, ExecutionResult, MarketState, OrderRequest


class ExchangeAdapter(ABC):
    """Signer-agnostic venue operations."""

    @abstractmethod
    async def get_market_state(self, coins: Optional[Iterable[str]] = None) -> MarketState:
        ...

    @abstractmethod
    async def get_account_state(self, address: str) -> AccountState:
        ...

    @abstractmethod
    async def update_leverage(self, signer: Signer, coin: str, leverage: int, is_cross: bool = True) -> None:
        ...

    @abstractmethod
    async def submit_order(
        self, signer: Signer, order: OrderRequest, builder: Optional[dict] = None
    ) -> ExecutionResult:
        """Submit one order. builder is {"b": address, "f": fee_tenths_bp} when set."""

    @abstractmethod
    async def max_builder_fee(self, user: str, builder: str) -> int:
        """Builder fee the user has approved, in tenths of a basis point."""

    @abstractmethod
    async def approve_builder_fee(self, signer: Signer, builder: str, fee_tenths_bp: int) -> None:
        ...

    async def aclose(self) -> None:
        pass
