"""
HTTP client for the quorum key-management service.

Endpoints:
    GET  /vaults                        list vaults
    POST /vaults                        create a vault (quorum must join)
    GET  /vaults/{id}                   vault status
    GET  /vaults/{id}/publickey         single-key vault public key
    POST /vaults/{id}/coins/{coin}/accounts/0/chains/external/addresses
                                        BIP44 vault: derive a new key
    POST /vaults/{id}/sign              submit a signing request
    GET  /operations/sign/{id}          signing operation status
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from quorumvault.errors import NetworkError
from quorumvault.models import (
    CryptoKind,
    SigningOperation,
    SigningStatus,
    Vault,
    VaultHierarchy,
    VaultSpec,
    VaultStatus,
)

DEFAULT_SERVICE_TIMEOUT = 30.0

REJECTED_STATUSES = {"REJECTED", "DECLINED", "CANCELLED", "CANCELED", "EXPIRED", "FAILED"}
FAILED_VAULT_STATUSES = {"FAILED", "CREATE_FAILED", "REJECTED", "DECLINED"}


def pending_approvers(data: dict[str, Any]) -> list[str]:
    """Identities that still have to approve/join, from either response shape."""
    if "pendingParticipants" in data:
        return [
            str(p.get("name") or p.get("id")) if isinstance(p, dict) else str(p)
            for p in data.get("pendingParticipants") or []
        ]

    pending = []
    for group in data.get("groups") or []:
        for member in group.get("members") or group.get("participants") or []:
            if not (member.get("isActive") or member.get("isApproved") or member.get("joined")):
                pending.append(str(member.get("name") or member.get("id")))
    return pending


def parse_vault(data: dict[str, Any]) -> Vault:
    status_text = str(data.get("status", "")).upper()
    waiting = pending_approvers(data)

    if data.get("isActive"):
        status = VaultStatus.ACTIVE
    elif waiting:
        status = VaultStatus.PENDING_JOIN
    else:
        status = VaultStatus.CREATING

    hierarchy = str(data.get("hierarchy") or VaultHierarchy.SINGLE_KEY.value).upper()
    return Vault(
        id=str(data["id"]),
        name=data.get("name", ""),
        hierarchy=VaultHierarchy.BIP44 if hierarchy == "BIP44" else VaultHierarchy.SINGLE_KEY,
        crypto_kind=CryptoKind(str(data.get("cryptoKind", "ECDSA")).upper()),
        status=status,
        pending_approvers=waiting,
        failure_reason=status_text if status_text in FAILED_VAULT_STATUSES else None,
    )


def parse_sign_operation(operation_id: str, data: dict[str, Any]) -> SigningOperation:
    status_text = str(data.get("status", "PENDING")).upper()
    if status_text in REJECTED_STATUSES:
        status = SigningStatus.REJECTED
    elif status_text in SigningStatus.__members__:
        status = SigningStatus(status_text)
    else:
        logger.warning(f"Unknown signing status {status_text!r}, treating as PENDING")
        status = SigningStatus.PENDING

    return SigningOperation(
        operation_id=operation_id,
        status=status,
        signatures=[sig.removeprefix("0x") for sig in data.get("signatures") or []],
        pending_approvers=pending_approvers(data),
        is_approved=bool(data.get("isApproved", False)),
    )


def read_public_key(data: dict[str, Any]) -> str:
    key = data["publicKey"]
    if not isinstance(key, str):
        raise TypeError(f"publicKey is {type(key).__name__}, expected hex string")
    return key


class QuorumServiceClient:
    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = DEFAULT_SERVICE_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        auth = (username, password) if username and password else None
        self.client = client or httpx.AsyncClient(timeout=timeout, auth=auth)

    async def _request(self, method: str, endpoint: str, body: Any | None = None) -> Any:
        try:
            response = await self.client.request(
                method, f"{self.base_url}/{endpoint.lstrip('/')}", json=body
            )
            response.raise_for_status()
            return response.json() if response.content else None
        except httpx.HTTPError as e:
            logger.error(f"Quorum service call failed: {method} {endpoint} - {e}")
            raise NetworkError(f"Quorum service {method} {endpoint} failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"Quorum service returned invalid JSON for {endpoint}") from e

    async def _fetch(self, method: str, endpoint: str, read, body: Any | None = None) -> Any:
        """Request `endpoint` and apply `read` to the body; malformed bodies are NetworkError."""
        data = await self._request(method, endpoint, body)
        try:
            return read(data)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.error(f"Malformed quorum service response for {method} {endpoint}: {data!r}")
            raise NetworkError(
                f"Quorum service {method} {endpoint} returned a malformed response: {e!r}"
            ) from e

    async def list_vaults(self) -> list[Vault]:
        def read(data):
            items = data.get("vaults", []) if isinstance(data, dict) else data or []
            return [parse_vault(item) for item in items]

        return await self._fetch("GET", "vaults", read)

    async def find_vault(self, name: str) -> Vault | None:
        for vault in await self.list_vaults():
            if vault.name == name:
                return vault
        return None

    async def create_vault(self, spec: VaultSpec) -> str:
        body = {
            "name": spec.name,
            "description": spec.description or spec.name,
            "hierarchy": spec.hierarchy.value,
            "cryptoKind": spec.crypto_kind.value,
            "groups": [
                {
                    "name": "approvers",
                    "isGlobal": True,
                    "requiredApprovals": spec.required_approvals,
                    "members": [{"id": approver} for approver in spec.approvers],
                }
            ],
        }
        vault_id = await self._fetch("POST", "vaults", lambda data: str(data["id"]), body)
        logger.info(f"Requested creation of vault {spec.name} ({vault_id})")
        return vault_id

    async def get_vault(self, vault_id: str) -> Vault:
        return await self._fetch("GET", f"vaults/{vault_id}", parse_vault)

    async def get_public_key(self, vault_id: str) -> str:
        return await self._fetch("GET", f"vaults/{vault_id}/publickey", read_public_key)

    async def derive_public_key(self, vault_id: str, coin_id: int) -> str:
        return await self._fetch(
            "POST",
            f"vaults/{vault_id}/coins/{coin_id}/accounts/0/chains/external/addresses",
            read_public_key,
        )

    async def submit_sign(self, vault_id: str, request: dict[str, Any]) -> str:
        return await self._fetch(
            "POST",
            f"vaults/{vault_id}/sign",
            lambda data: str(data.get("operationID") or data["id"]),
            request,
        )

    async def get_sign_operation(self, operation_id: str) -> SigningOperation:
        return await self._fetch(
            "GET",
            f"operations/sign/{operation_id}",
            lambda data: parse_sign_operation(operation_id, data),
        )

    async def close(self) -> None:
        await self.client.aclose()
