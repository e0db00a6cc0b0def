"""
Hyperliquid exchange adapter.

Reads go to POST /info, signed actions to POST /exchange. Every call runs
through with_retry and the adapter's circuit breaker. Signed payloads are
built once and resent unchanged on retry; the exchange rejects a reused
nonce, so a retried submission cannot double-fill. A rejection after a
resend raises ExecutionAmbiguous, since the first attempt may be live.
"""
import logging
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from hyperliquid.utils.signing import get_timestamp_ms, order_request_to_order_wire

from ..config import FleetSettings
from ..custody import Signer
from ..errors import BusinessRejection, ExecutionAmbiguous, TransientExchangeError
from ..resilience import CircuitBreaker, RetryableHTTPCodes, retry_config_from_settings, with_retry
from ..schemas import (
    AccountState,
    ExecutionResult,
    MarketInfo,
    MarketState,
    OrderRequest,
    OrderType,
    PositionInfo,
)
from .base import ExchangeAdapter

logger = logging.getLogger("fleet_trader.exchange.hyperliquid")

SIGNATURE_CHAIN_ID = "0x66eee"


def fee_rate_string(fee_tenths_bp: int) -> str:
    """10 tenths of a bp -> '0.01%'."""
    return f"{fee_tenths_bp / 1000:g}%"


class HyperliquidAdapter(ExchangeAdapter):
    """httpx-based Hyperliquid client with retry and circuit breaking."""

    def __init__(self, settings: FleetSettings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.is_mainnet = settings.is_mainnet
        self._http = http or httpx.AsyncClient(base_url=settings.base_url, timeout=settings.http_timeout_sec)
        self._retry = retry_config_from_settings(settings)
        self.circuit = CircuitBreaker(
            service="hyperliquid",
            fail_threshold=settings.circuit_fail_threshold,
            cooldown_sec=settings.circuit_cooldown_sec,
        )
        self._asset_ids: Dict[str, int] = {}
        self._sz_decimals: Dict[str, int] = {}

    # ------------------------------------------------------------ transport

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        try:
            resp = await self._http.post(path, json=payload)
        except httpx.TransportError as e:
            raise TransientExchangeError(f"{path} request failed: {e}") from e

        if RetryableHTTPCodes.is_retryable(resp.status_code):
            raise TransientExchangeError(
                f"{path} returned HTTP {resp.status_code}", status_code=resp.status_code
            )
        if resp.status_code >= 400:
            raise BusinessRejection(f"{path} returned HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            return resp.json()
        except ValueError as e:
            raise TransientExchangeError(f"{path} returned a non-JSON body") from e

    async def _info(self, payload: Dict[str, Any]) -> Any:
        return await with_retry(
            lambda: self._post("/info", payload),
            circuit=self.circuit,
            config=self._retry,
            label=f"hyperliquid /info {payload.get('type')}",
        )

    async def _send_action(
        self,
        action: Dict[str, Any],
        nonce: int,
        signature: Dict[str, Any],
        parse: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> Any:
        """
        Post a signed action and check the response with parse. A rejection
        that follows a failed attempt is ambiguous: the earlier attempt may
        have been processed, so the retry is refused as a duplicate nonce.
        """
        payload = {
            "action": action,
            "nonce": nonce,
            "signature": signature,
            "vaultAddress": None,
        }
        attempts = 0

        async def _attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return await self._post("/exchange", payload)

        kind = action.get("type")
        result = await with_retry(
            _attempt,
            circuit=self.circuit,
            config=self._retry,
            label=f"hyperliquid /exchange {kind}",
        )
        try:
            if not isinstance(result, dict) or result.get("status") != "ok":
                detail = result.get("response") if isinstance(result, dict) else result
                raise BusinessRejection(f"Exchange rejected {kind}: {detail}")
            return parse(result) if parse else result
        except BusinessRejection as e:
            if attempts > 1:
                logger.warning(
                    f"AMBIGUOUS {kind} (nonce {nonce}): rejected after {attempts} attempts, "
                    f"an earlier attempt may have been processed: {e.message}"
                )
                raise ExecutionAmbiguous(
                    f"{kind} rejected after {attempts} attempts; an earlier attempt may be live: {e.message}"
                ) from e
            raise

    async def _sign_and_send(
        self,
        signer: Signer,
        action: Dict[str, Any],
        parse: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> Any:
        nonce = get_timestamp_ms()
        signature = await signer.sign_l1_action(action, nonce, self.is_mainnet)
        return await self._send_action(action, nonce, signature, parse)

    # ------------------------------------------------------------ metadata

    def _load_universe(self, universe: List[Dict[str, Any]]) -> None:
        for idx, asset in enumerate(universe):
            name = str(asset.get("name", "")).upper()
            if not name:
                continue
            self._asset_ids[name] = idx
            self._sz_decimals[name] = int(asset.get("szDecimals", 0))

    async def _ensure_meta(self) -> None:
        if self._asset_ids:
            return
        meta = await self._info({"type": "meta"})
        self._load_universe(meta.get("universe", []))

    async def asset_index(self, coin: str) -> int:
        await self._ensure_meta()
        idx = self._asset_ids.get(coin.upper())
        if idx is None:
            raise BusinessRejection(f"Unknown market '{coin}'")
        return idx

    def _round_size(self, size: float, coin: str) -> float:
        """Round order size DOWN to exchange precision (never up-round)."""
        decimals = self._sz_decimals.get(coin.upper(), 0)
        q = Decimal("1").scaleb(-decimals)
        return float(Decimal(str(size)).quantize(q, rounding=ROUND_DOWN))

    def _round_price(self, price: float, coin: str) -> float:
        """5 significant figures, at most 6 - szDecimals decimals."""
        px_decimals = max(0, 6 - self._sz_decimals.get(coin.upper(), 0))
        return round(float(f"{price:.5g}"), px_decimals)

    # ------------------------------------------------------------ reads

    async def get_market_state(self, coins: Optional[Iterable[str]] = None) -> MarketState:
        meta, ctxs = await self._info({"type": "metaAndAssetCtxs"})
        universe = meta.get("universe", [])
        self._load_universe(universe)
        wanted = {c.upper() for c in coins} if coins else None

        markets: Dict[str, MarketInfo] = {}
        for asset, ctx in zip(universe, ctxs):
            name = str(asset.get("name", "")).upper()
            if wanted is not None and name not in wanted:
                continue
            price = float(ctx.get("midPx") or ctx.get("markPx") or 0)
            if price <= 0:
                continue
            markets[name] = MarketInfo(
                coin=name,
                price=price,
                funding_rate=float(ctx.get("funding") or 0),
                open_interest=float(ctx.get("openInterest") or 0),
                volume_24h=float(ctx.get("dayNtlVlm") or 0),
            )
        return MarketState(markets=markets)

    async def mid_price(self, coin: str) -> float:
        mids = await self._info({"type": "allMids"})
        price = mids.get(coin.upper())
        if price is None:
            raise BusinessRejection(f"No mid price for '{coin}'")
        return float(price)

    async def get_account_state(self, address: str) -> AccountState:
        state = await self._info({"type": "clearinghouseState", "user": address})
        summary = state.get("marginSummary", {})
        positions = []
        for entry in state.get("assetPositions", []):
            pos = entry.get("position", {})
            size = float(pos.get("szi") or 0)
            if size == 0:
                continue
            leverage = pos.get("leverage") or {}
            positions.append(
                PositionInfo(
                    coin=str(pos.get("coin", "")).upper(),
                    size=size,
                    entry_price=float(pos.get("entryPx") or 0),
                    unrealized_pnl=float(pos.get("unrealizedPnl") or 0),
                    leverage=int(leverage["value"]) if "value" in leverage else None,
                )
            )
        return AccountState(
            address=address,
            withdrawable=float(state.get("withdrawable") or 0),
            account_value=float(summary.get("accountValue") or 0),
            positions=positions,
        )

    async def max_builder_fee(self, user: str, builder: str) -> int:
        result = await self._info({"type": "maxBuilderFee", "user": user, "builder": builder.lower()})
        return int(result or 0)

    # ------------------------------------------------------------ writes

    async def update_leverage(self, signer: Signer, coin: str, leverage: int, is_cross: bool = True) -> None:
        action = {
            "type": "updateLeverage",
            "asset": await self.asset_index(coin),
            "isCross": is_cross,
            "leverage": int(leverage),
        }
        await self._sign_and_send(signer, action)
        logger.info(f"Leverage set to {leverage}x on {coin} for {signer.address}")

    async def _order_wire(self, order: OrderRequest) -> Dict[str, Any]:
        coin = order.coin.upper()
        asset = await self.asset_index(coin)

        if order.order_type == OrderType.MARKET:
            reference = order.price or await self.mid_price(coin)
            slip = order.slippage_percent / 100
            limit_px = reference * (1 + slip) if order.is_buy else reference * (1 - slip)
            order_type: Dict[str, Any] = {"limit": {"tif": "Ioc"}}
        elif order.order_type == OrderType.LIMIT:
            if order.price is None:
                raise BusinessRejection("Limit order needs a price")
            limit_px = order.price
            order_type = {"limit": {"tif": "Gtc"}}
        else:
            if order.trigger_price is None:
                raise BusinessRejection(f"{order.order_type.value} order needs a trigger price")
            trigger_px = self._round_price(order.trigger_price, coin)
            limit_px = order.price or order.trigger_price
            order_type = {
                "trigger": {
                    "triggerPx": trigger_px,
                    "isMarket": True,
                    "tpsl": "sl" if order.order_type == OrderType.STOP_LOSS else "tp",
                }
            }

        size = self._round_size(order.size, coin)
        if size <= 0:
            raise BusinessRejection(f"Order size {order.size} rounds to zero for {coin}")

        return order_request_to_order_wire(
            {
                "coin": coin,
                "is_buy": order.is_buy,
                "sz": size,
                "limit_px": self._round_price(limit_px, coin),
                "order_type": order_type,
                "reduce_only": order.reduce_only,
            },
            asset,
        )

    async def submit_order(
        self, signer: Signer, order: OrderRequest, builder: Optional[dict] = None
    ) -> ExecutionResult:
        wire = await self._order_wire(order)
        action: Dict[str, Any] = {"type": "order", "orders": [wire], "grouping": "na"}
        if builder:
            action["builder"] = {"b": builder["b"].lower(), "f": int(builder["f"])}

        parsed = await self._sign_and_send(
            signer, action, parse=lambda result: self._parse_order_response(result, default_price=float(wire["p"]))
        )
        logger.info(
            f"ORDER {parsed.status.upper()}: {order.side.value} {wire['s']} {order.coin} "
            f"@ {parsed.fill_price or wire['p']} -> {parsed.order_id}"
        )
        return parsed

    async def approve_builder_fee(self, signer: Signer, builder: str, fee_tenths_bp: int) -> None:
        nonce = get_timestamp_ms()
        action = {
            "maxFeeRate": fee_rate_string(fee_tenths_bp),
            "builder": builder.lower(),
            "nonce": nonce,
            "type": "approveBuilderFee",
            "signatureChainId": SIGNATURE_CHAIN_ID,
            "hyperliquidChain": "Mainnet" if self.is_mainnet else "Testnet",
        }
        signature = await signer.sign_builder_approval(action, self.is_mainnet)
        await self._send_action(action, nonce, signature)
        logger.info(f"Builder fee {fee_rate_string(fee_tenths_bp)} approved for {signer.address}")

    # ------------------------------------------------------------ parsing

    @staticmethod
    def _parse_order_response(result: Dict[str, Any], default_price: float = 0.0) -> ExecutionResult:
        response = result.get("response", {})
        data = response.get("data", {}) if isinstance(response, dict) else {}
        statuses = data.get("statuses") if isinstance(data, dict) else None
        info = statuses[0] if statuses and isinstance(statuses[0], dict) else {}

        if "error" in info:
            raise BusinessRejection(f"Order rejected: {info['error']}")
        if "filled" in info:
            filled = info["filled"]
            return ExecutionResult(
                order_id=str(filled.get("oid", "")) or None,
                status="filled",
                fill_price=float(filled.get("avgPx") or default_price),
                fill_size=float(filled.get("totalSz") or 0),
                raw=result,
            )
        if "resting" in info:
            return ExecutionResult(
                order_id=str(info["resting"].get("oid", "")) or None,
                status="resting",
                fill_price=0.0,
                raw=result,
            )
        return ExecutionResult(status="accepted", raw=result)

    async def aclose(self) -> None:
        await self._http.aclose()
