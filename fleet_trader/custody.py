"""
Custody - signers and the resolver that picks one per agent.

Two signing paths exist:
- ThresholdSigner: a distributed key (PKP) signs remotely; no private key
  ever reaches this process.
- DirectKeySigner: a locally held key signs with the exchange SDK.

Callers above this module never branch on the path; they ask the
resolver for a Signer and hand it to the exchange adapter.
"""
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from eth_account import Account
from hyperliquid.utils.signing import sign_approve_builder_fee, sign_l1_action

from .config import FleetSettings
from .errors import CustodyError, TransientExchangeError
from .resilience import CircuitBreaker, RetryableHTTPCodes, retry_config_from_settings, with_retry
from .schemas import CustodyBinding, SigningMethod
from .store import AgentStore

logger = logging.getLogger("fleet_trader.custody")


class Signer(ABC):
    """Signs exchange actions for one trading account."""

    signing_method: SigningMethod

    def __init__(self, address: str):
        self.address = address

    @abstractmethod
    async def sign_l1_action(self, action: Dict[str, Any], nonce: int, is_mainnet: bool) -> Dict[str, Any]:
        """Return an {r, s, v} signature for an order/leverage action."""

    @abstractmethod
    async def sign_builder_approval(self, action: Dict[str, Any], is_mainnet: bool) -> Dict[str, Any]:
        """Return an {r, s, v} signature for an approveBuilderFee action."""


class DirectKeySigner(Signer):
    signing_method = SigningMethod.DIRECT_KEY

    def __init__(self, private_key: str, expected_address: Optional[str] = None):
        self._wallet = Account.from_key(private_key)
        if expected_address and self._wallet.address.lower() != expected_address.lower():
            raise CustodyError(
                f"Key resolves to {self._wallet.address}, binding expects {expected_address}"
            )
        super().__init__(self._wallet.address)

    async def sign_l1_action(self, action: Dict[str, Any], nonce: int, is_mainnet: bool) -> Dict[str, Any]:
        return sign_l1_action(self._wallet, action, None, nonce, None, is_mainnet)

    async def sign_builder_approval(self, action: Dict[str, Any], is_mainnet: bool) -> Dict[str, Any]:
        return sign_approve_builder_fee(self._wallet, action, is_mainnet)


class ThresholdSigningClient:
    """HTTP client for the remote threshold-signing service."""

    def __init__(self, settings: FleetSettings, http: Optional[httpx.AsyncClient] = None):
        if not settings.threshold_signer_url:
            raise CustodyError("threshold_signer_url is not configured")
        headers = {}
        if settings.threshold_signer_token:
            headers["Authorization"] = f"Bearer {settings.threshold_signer_token}"
        self._http = http or httpx.AsyncClient(
            base_url=settings.threshold_signer_url.rstrip("/"),
            timeout=settings.http_timeout_sec,
            headers=headers,
        )
        self._retry = retry_config_from_settings(settings)
        self.circuit = CircuitBreaker(
            service="threshold-signer",
            fail_threshold=settings.circuit_fail_threshold,
            cooldown_sec=settings.circuit_cooldown_sec,
        )

    async def sign(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async def _call() -> Dict[str, Any]:
            try:
                resp = await self._http.post(path, json=payload)
            except httpx.TransportError as e:
                raise TransientExchangeError(f"Threshold signer unreachable: {e}") from e
            if RetryableHTTPCodes.is_retryable(resp.status_code):
                raise TransientExchangeError(
                    f"Threshold signer returned HTTP {resp.status_code}", status_code=resp.status_code
                )
            if resp.status_code >= 400:
                raise CustodyError(f"Threshold signer refused: HTTP {resp.status_code} {resp.text[:200]}")
            try:
                body = resp.json()
            except ValueError as e:
                raise TransientExchangeError("Threshold signer returned a non-JSON body") from e
            signature = body.get("signature") if isinstance(body, dict) else None
            if not isinstance(signature, dict) or not {"r", "s", "v"} <= set(signature):
                raise CustodyError(f"Threshold signer returned no signature: {body}")
            return {"r": signature["r"], "s": signature["s"], "v": int(signature["v"])}

        return await with_retry(_call, circuit=self.circuit, config=self._retry, label="threshold-signer")

    async def aclose(self) -> None:
        await self._http.aclose()


class ThresholdSigner(Signer):
    signing_method = SigningMethod.THRESHOLD

    def __init__(self, address: str, pkp_public_key: str, client: ThresholdSigningClient):
        super().__init__(address)
        self.pkp_public_key = pkp_public_key
        self._client = client

    async def sign_l1_action(self, action: Dict[str, Any], nonce: int, is_mainnet: bool) -> Dict[str, Any]:
        return await self._client.sign(
            "/sign/l1-action",
            {
                "publicKey": self.pkp_public_key,
                "action": action,
                "nonce": nonce,
                "isMainnet": is_mainnet,
            },
        )

    async def sign_builder_approval(self, action: Dict[str, Any], is_mainnet: bool) -> Dict[str, Any]:
        return await self._client.sign(
            "/sign/builder-approval",
            {
                "publicKey": self.pkp_public_key,
                "action": action,
                "isMainnet": is_mainnet,
            },
        )


class EnvKeyProvider:
    """Looks up direct keys by reference name in the environment."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    def get(self, key_ref: str) -> str:
        key = self._environ.get(key_ref)
        if not key:
            raise CustodyError(f"No key material found for reference '{key_ref}'")
        return key


class CustodyResolver:
    """Chooses the signing path for an agent from its custody binding."""

    def __init__(
        self,
        store: AgentStore,
        key_provider: Optional[EnvKeyProvider] = None,
        threshold_client: Optional[ThresholdSigningClient] = None,
    ):
        self.store = store
        self.key_provider = key_provider or EnvKeyProvider()
        self.threshold_client = threshold_client
        self._signers: Dict[str, tuple[CustodyBinding, Signer]] = {}

    async def binding(self, agent_id: str) -> CustodyBinding:
        binding = await self.store.get_custody_binding(agent_id)
        if binding is None:
            raise CustodyError(f"Agent {agent_id} has no custody binding")
        return binding

    async def is_threshold_signer(self, agent_id: str) -> bool:
        return (await self.binding(agent_id)).signing_method == SigningMethod.THRESHOLD

    async def address(self, agent_id: str) -> str:
        return (await self.binding(agent_id)).address

    async def signer(self, agent_id: str) -> Signer:
        binding = await self.binding(agent_id)
        cached = self._signers.get(agent_id)
        if cached and cached[0] == binding:
            return cached[1]

        if binding.signing_method == SigningMethod.THRESHOLD:
            if self.threshold_client is None:
                raise CustodyError(f"Agent {agent_id} uses threshold custody but no signer service is configured")
            signer: Signer = ThresholdSigner(binding.address, binding.pkp_public_key, self.threshold_client)
        else:
            try:
                signer = DirectKeySigner(self.key_provider.get(binding.key_ref), binding.address)
            except ValueError as e:
                raise CustodyError(f"Invalid key material for agent {agent_id}: {e}") from e

        logger.info(f"[Agent {agent_id}] Resolved {binding.signing_method.value} signer for {binding.address}")
        self._signers[agent_id] = (binding, signer)
        return signer


__all__ = [
    "CustodyResolver",
    "DirectKeySigner",
    "EnvKeyProvider",
    "Signer",
    "ThresholdSigner",
    "ThresholdSigningClient",
]
