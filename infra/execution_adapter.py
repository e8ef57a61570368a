"""
vaultpilot Infrastructure: Execution Adapter

Hands a decided rebalance (redeem from source vault, deposit into target)
to an external relay that builds, signs and submits the transaction. The
unsealed session credential travels only in this call.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Tuple

import requests

from core.exceptions import ExecutionFailed
from infra.http_client import post_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RebalanceRequest:
    wallet: str
    from_vault: str
    to_vault: str
    shares: int
    assets: int
    session_key_id: str
    chain_id: int
    approved_vaults: Tuple[str, ...] = ()
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    receipt_id: Optional[str] = None
    error: Optional[str] = None


class ExecutionAdapter:
    def execute(self, request: RebalanceRequest, credential: str) -> ExecutionResult:
        """
        Submit one rebalance.

        Returns:
            ExecutionResult (success=False with error text when the relay
            rejects the operation)

        Raises:
            ExecutionFailed: on transport-level failures
        """
        raise NotImplementedError


class HttpExecutionAdapter(ExecutionAdapter):
    """
    Posts rebalance requests to a relay endpoint.

    Not retried: a timed-out submission may still land on-chain, and the
    per-user lock plus the next cycle's fresh position read are the
    recovery path.
    """

    def __init__(self,
                 endpoint: str,
                 timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        if not endpoint:
            raise ValueError("HttpExecutionAdapter requires an endpoint")
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session

    def execute(self, request: RebalanceRequest, credential: str) -> ExecutionResult:
        payload = {
            "request_id": request.request_id,
            "wallet": request.wallet,
            "chain_id": request.chain_id,
            "from_vault": request.from_vault,
            "to_vault": request.to_vault,
            # Base-unit integers as strings to avoid float rounding in transit
            "shares": str(request.shares),
            "assets": str(request.assets),
            "session_key_id": request.session_key_id,
            "approved_vaults": list(request.approved_vaults),
            "session_credential": credential,
        }

        try:
            response = post_json(
                self.endpoint,
                payload,
                timeout=self.timeout,
                max_retries=1,
                headers={"Idempotency-Key": request.request_id},
                session=self._session,
            )
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            return ExecutionResult(success=False, error=f"Relay rejected request (HTTP {status})")
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ExecutionFailed(f"Relay unreachable: {e}") from e

        if not response.get("success"):
            return ExecutionResult(success=False, error=str(response.get("error") or "Relay reported failure"))

        receipt_id = response.get("receipt_id") or response.get("task_id")
        logger.info(f"Rebalance submitted for {request.wallet}: receipt={receipt_id}")
        return ExecutionResult(success=True, receipt_id=receipt_id)
