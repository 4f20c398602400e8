"""
Fetcher Agent — pulls new UserOperations and account deployments from the
Belt indexer GraphQL API, strictly after a given block.
"""
from __future__ import annotations

import logging

import httpx

from belt_monitor.errors import UpstreamUnavailable
from belt_monitor.models import (
    ZERO_ADDRESS,
    DeploymentEvent,
    DomainEvent,
    EventKind,
    OperationEvent,
    WalletState,
)
from belt_monitor.utils.http_client import post_json

log = logging.getLogger(__name__)

USER_OPS_QUERY = """
query GetRecentUserOps($since: String!, $first: Int!) {
  userOperations(
    filter: { blockNumber: { greaterThan: $since } }
    orderBy: BLOCK_NUMBER_ASC
    first: $first
  ) {
    items {
      id
      txHash
      sender
      paymaster
      actualGasCost
      success
      blockNumber
      timestamp
    }
  }
}
"""

DEPLOYMENTS_QUERY = """
query GetRecentDeployments($since: String!, $first: Int!) {
  accountDeployeds(
    filter: { blockNumber: { greaterThan: $since } }
    orderBy: BLOCK_NUMBER_ASC
    first: $first
  ) {
    items {
      id
      account
      factory
      entryPoint
      blockNumber
      timestamp
    }
  }
}
"""

WALLET_QUERY = """
query GetWallet($address: String!) {
  wallets(filter: { address: { equalTo: $address } }, first: 1) {
    items {
      address
      factory
      deployedAt
      totalUserOps
      totalGasSpent
    }
  }
}
"""

_COLLECTIONS: dict[str, tuple[str, str]] = {
    "user_op": ("userOperations", USER_OPS_QUERY),
    "deployment": ("accountDeployeds", DEPLOYMENTS_QUERY),
}


class Fetcher:
    def __init__(
        self,
        indexer_url: str,
        *,
        batch_size: int = 100,
        chain_id: int = 369,
        entry_point_version: str = "",
    ) -> None:
        self.indexer_url = indexer_url
        self.batch_size = batch_size
        self.chain_id = chain_id
        self.entry_point_version = entry_point_version

    async def _query(self, query: str, variables: dict) -> dict:
        """Run a GraphQL query and return its ``data`` object."""
        try:
            body = await post_json(self.indexer_url, {"query": query, "variables": variables})
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamUnavailable(f"Indexer request failed: {exc}") from exc

        if not isinstance(body, dict):
            raise UpstreamUnavailable(f"Unexpected indexer response type: {type(body).__name__}")
        if body.get("errors"):
            raise UpstreamUnavailable(f"Indexer returned errors: {body['errors']}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise UpstreamUnavailable("Indexer response has no data object")
        return data

    async def fetch_since(self, kind: EventKind, position: int) -> list[DomainEvent]:
        """
        Fetch up to ``batch_size`` events of *kind* with a block number strictly
        greater than *position*, ascending by block.

        Raises
        ------
        UpstreamUnavailable
            On transport, HTTP or GraphQL errors, or a malformed response.
        """
        collection, query = _COLLECTIONS[kind]
        data = await self._query(query, {"since": str(position), "first": self.batch_size})

        # A null collection means nothing indexed yet
        container = data.get(collection) or {}
        if not isinstance(container, dict):
            raise UpstreamUnavailable(f"{collection} is not an object")
        items = container.get("items") or []
        if not isinstance(items, list):
            raise UpstreamUnavailable(f"{collection}.items is not a list")

        parse = _parse_user_op if kind == "user_op" else _parse_deployment
        events: list[DomainEvent] = []
        for item in items:
            try:
                event = parse(item, self.chain_id, self.entry_point_version)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Failed to parse %s entry: %s — %s", kind, item, exc)
                continue
            # Guard the strict-greater contract even if the indexer filter is inclusive
            if event.position > position:
                events.append(event)

        events.sort(key=lambda e: e.position)
        events = events[: self.batch_size]
        log.debug("Fetched %d %s event(s) after block %d", len(events), kind, position)
        return events

    async def fetch_wallet(self, address: str) -> WalletState | None:
        """Best-effort lookup of a wallet's aggregate state; None if unavailable."""
        try:
            data = await self._query(WALLET_QUERY, {"address": address})
            items = (data.get("wallets") or {}).get("items") or []
            if not items:
                return None
            return _parse_wallet(items[0], self.chain_id, self.entry_point_version)
        except (UpstreamUnavailable, AttributeError, KeyError, TypeError, ValueError) as exc:
            log.debug("Wallet lookup for %s failed: %s", address, exc)
            return None


def _parse_user_op(item: dict, chain_id: int, entry_point_version: str) -> OperationEvent:
    """Convert a raw ``userOperations`` item into an OperationEvent."""
    return OperationEvent(
        id=str(item["id"]),
        position=int(item["blockNumber"]),
        timestamp=int(item["timestamp"]),
        success=bool(item["success"]),
        cost=int(item.get("actualGasCost") or 0),
        sender=item["sender"],
        paymaster=item.get("paymaster") or ZERO_ADDRESS,
        tx_hash=item.get("txHash") or "",
        block_hash=item.get("blockHash") or "",
        chain_id=int(item.get("chainId") or chain_id),
        entry_point_version=entry_point_version,
        gas_used=int(item.get("actualGasUsed") or 0),
    )


def _parse_deployment(item: dict, chain_id: int, entry_point_version: str) -> DeploymentEvent:
    """Convert a raw ``accountDeployeds`` item into a DeploymentEvent."""
    return DeploymentEvent(
        id=str(item["id"]),
        position=int(item["blockNumber"]),
        timestamp=int(item["timestamp"]),
        account=item["account"],
        factory=item["factory"],
        paymaster=item.get("paymaster") or ZERO_ADDRESS,
        entry_point=item.get("entryPoint") or "",
        tx_hash=item.get("txHash") or "",
        block_hash=item.get("blockHash") or "",
        chain_id=int(item.get("chainId") or chain_id),
        entry_point_version=entry_point_version,
    )


def _parse_wallet(item: dict, chain_id: int, entry_point_version: str) -> WalletState:
    return WalletState(
        address=item["address"],
        chain_id=chain_id,
        factory=item.get("factory") or "",
        entry_point_version=entry_point_version,
        deployed_at=int(item.get("deployedAt") or 0),
        total_user_ops=int(item.get("totalUserOps") or 0),
        total_gas_spent=int(item.get("totalGasSpent") or 0),
    )
