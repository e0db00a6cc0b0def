"""
Vault invariant guard.

The vault owner (leader) must keep at least 5% of all vault shares at all
times. Withdrawals are checked against a fresh read of the share ledger
before anything is submitted.
"""
import logging

from .errors import InvariantViolation
from .schemas import VaultShares, WithdrawalCheck
from .store import AgentStore

logger = logging.getLogger("fleet_trader.vault")

OWNER_FLOOR = 0.05


def max_withdrawable_shares(owner_shares: float, total_shares: float) -> float:
    """
    Largest owner withdrawal w with (owner - w) / (total - w) >= 5%.

    Solving gives (100*owner - 5*total) / 95. An empty vault allows nothing.
    """
    if total_shares <= 0:
        return 0.0
    return max(0.0, (100 * owner_shares - 5 * total_shares) / 95)


def max_third_party_deposit_shares(owner_shares: float, total_shares: float) -> float:
    """Largest deposit by other depositors that keeps owner / total >= 5%."""
    return max(0.0, owner_shares / OWNER_FLOOR - total_shares)


def check_withdrawal(owner_shares: float, total_shares: float, requested_shares: float) -> WithdrawalCheck:
    """Raise InvariantViolation unless the owner may withdraw requested_shares."""
    if requested_shares <= 0:
        raise InvariantViolation(f"Withdrawal must be positive, got {requested_shares}")
    if owner_shares > total_shares:
        raise InvariantViolation(
            f"Owner shares {owner_shares} exceed vault total {total_shares}"
        )

    limit = max_withdrawable_shares(owner_shares, total_shares)
    if requested_shares > limit:
        raise InvariantViolation(
            f"Withdrawal of {requested_shares} shares would leave the owner below "
            f"{OWNER_FLOOR:.0%} of the vault (max {limit:.6f})"
        )
    return WithdrawalCheck(
        owner_shares=owner_shares,
        total_shares=total_shares,
        requested_shares=requested_shares,
        max_withdrawable=limit,
        allowed=True,
    )


def check_deposit(owner_shares: float, total_shares: float, deposit_shares: float) -> float:
    """Raise InvariantViolation if a third-party deposit would dilute the owner below the floor."""
    limit = max_third_party_deposit_shares(owner_shares, total_shares)
    if deposit_shares > limit:
        raise InvariantViolation(
            f"Deposit of {deposit_shares} shares would dilute the owner below "
            f"{OWNER_FLOOR:.0%} of the vault (max {limit:.6f})"
        )
    return limit


class WithdrawalGuard:
    """Checks vault operations against the current share ledger."""

    def __init__(self, store: AgentStore):
        self.store = store

    async def _shares(self, agent_id: str) -> VaultShares:
        shares = await self.store.get_vault_shares(agent_id)
        if shares is None:
            return VaultShares(agent_id=agent_id)
        return shares

    async def max_withdrawable(self, agent_id: str) -> float:
        shares = await self._shares(agent_id)
        return max_withdrawable_shares(shares.owner_shares, shares.total_shares)

    async def authorize_withdrawal(self, agent_id: str, requested_shares: float) -> WithdrawalCheck:
        shares = await self._shares(agent_id)
        try:
            return check_withdrawal(shares.owner_shares, shares.total_shares, requested_shares)
        except InvariantViolation as e:
            logger.warning(f"[Vault {agent_id}] Withdrawal blocked: {e.message}")
            raise

    async def authorize_deposit(self, agent_id: str, deposit_shares: float) -> float:
        shares = await self._shares(agent_id)
        return check_deposit(shares.owner_shares, shares.total_shares, deposit_shares)
