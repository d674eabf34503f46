from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .errors import SubgraphError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

PAGINATED_QUERY = """
query q($block: Block_height!, $first: Int!, $last: String!) {{
    meta: _meta(block: $block) {{ block {{ number hash }} }}
    results: {query}
}}
"""


@dataclass(frozen=True)
class Page:
    rows: List[Dict[str, Any]]
    block_number: int
    block_hash: Optional[str]


class SubgraphClient:
    """GraphQL over HTTP against an indexed subgraph.

    Paginated queries are written against the `$block`, `$first` and `$last`
    variables: the first page pins the block the subgraph answered at, every
    following page asks for that same block hash, and `$last` is the id of
    the last row seen.
    """

    def __init__(
        self,
        url: str,
        auth_token: Optional[str] = None,
        page_size: int = 500,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        timeout: int = 10,
    ):
        self.url = url
        self.auth_token = auth_token
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.latest_block = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            raise SubgraphError(f"{self.url}: {exc}") from exc
        except ValueError as exc:
            raise SubgraphError(f"{self.url}: response is not JSON") from exc
        errors = body.get("errors")
        if errors:
            message = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            raise SubgraphError(message, errors)
        data = body.get("data")
        if data is None:
            raise SubgraphError(f"{self.url}: empty response")
        return data

    def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        return self.retry_policy.call(self._post, payload)

    def paginated_query(self, query: str) -> Page:
        block: Dict[str, Any] = {"number_gte": self.latest_block}
        block_number = self.latest_block
        block_hash: Optional[str] = None
        last = ""
        rows: List[Dict[str, Any]] = []
        while True:
            data = self.query(
                PAGINATED_QUERY.format(query=query),
                {"block": block, "first": self.page_size, "last": last},
            )
            page = data.get("results") or []
            if block_hash is None:
                meta = data["meta"]["block"]
                block_hash = meta.get("hash")
                block_number = int(meta["number"])
                if block_hash:
                    block = {"hash": block_hash}
            logger.debug({"event": "page", "rows": len(page), "last": last, "block": block_number})
            rows.extend(page)
            if len(page) < self.page_size:
                break
            last = page[-1]["id"]
        return Page(rows=rows, block_number=block_number, block_hash=block_hash)

    def require_block(self, number: int) -> None:
        """Later queries must be answered at or after this block."""
        self.latest_block = max(self.latest_block, int(number))
