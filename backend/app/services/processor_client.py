"""Payment processor REST client - fetches authoritative payment/subscription state"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from app.core.errors import ProcessorAPIError
from app.utils.timeutils import parse_iso_datetime

logger = logging.getLogger(__name__)


@dataclass
class ProcessorResource:
    """Normalized view of a processor payment, preapproval or authorized payment"""
    kind: str  # 'payment', 'preapproval', 'authorized_payment'
    id: str
    status: str
    external_reference: Optional[str] = None
    preapproval_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    payer_email: Optional[str] = None
    date_created: Optional[datetime] = None
    next_payment_date: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_payment(self) -> bool:
        return self.kind in ("payment", "authorized_payment")

    @property
    def state_version(self) -> str:
        """Status plus last-modified time of this fetch, used to key the reconciliation"""
        if self.last_modified is None:
            return self.status
        return f"{self.status}@{self.last_modified.isoformat()}"


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class ProcessorClient:
    """Thin HTTPX wrapper around the processor API; every failure is transient"""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport

    def _get(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(url, headers={"Authorization": f"Bearer {self.access_token}"})
        except httpx.TimeoutException:
            logger.error(f"Processor API timed out: GET {path}")
            raise ProcessorAPIError(f"Processor API timed out for {path}")
        except httpx.RequestError as e:
            logger.error(f"Processor API request failed: GET {path}: {e}")
            raise ProcessorAPIError(f"Processor API unreachable for {path}: {e}")

        if response.status_code != 200:
            # A 404 right after creation is common: the resource is not visible yet, so retry
            logger.error(f"Processor API returned {response.status_code} for GET {path}: {response.text[:200]}")
            raise ProcessorAPIError(
                f"Processor API returned {response.status_code} for {path}",
                status=response.status_code
            )

        try:
            return response.json()
        except ValueError:
            raise ProcessorAPIError(f"Processor API returned invalid JSON for {path}")

    def get_payment(self, payment_id: str) -> ProcessorResource:
        data = self._get(f"/v1/payments/{payment_id}")
        metadata = data.get("metadata") or {}
        return ProcessorResource(
            kind="payment",
            id=str(data.get("id", payment_id)),
            status=str(data.get("status") or ""),
            external_reference=_str_or_none(data.get("external_reference")),
            preapproval_id=_str_or_none(metadata.get("preapproval_id")),
            payment_id=str(data.get("id", payment_id)),
            amount=data.get("transaction_amount"),
            currency=data.get("currency_id"),
            payer_email=(data.get("payer") or {}).get("email"),
            date_created=parse_iso_datetime(data.get("date_created")),
            last_modified=parse_iso_datetime(data.get("date_last_updated")),
            metadata=metadata
        )

    def get_preapproval(self, preapproval_id: str) -> ProcessorResource:
        data = self._get(f"/preapproval/{preapproval_id}")
        recurring = data.get("auto_recurring") or {}
        return ProcessorResource(
            kind="preapproval",
            id=str(data.get("id", preapproval_id)),
            status=str(data.get("status") or ""),
            external_reference=_str_or_none(data.get("external_reference")),
            preapproval_id=str(data.get("id", preapproval_id)),
            amount=recurring.get("transaction_amount"),
            currency=recurring.get("currency_id"),
            payer_email=data.get("payer_email"),
            date_created=parse_iso_datetime(data.get("date_created")),
            next_payment_date=parse_iso_datetime(data.get("next_payment_date")),
            last_modified=parse_iso_datetime(data.get("last_modified")),
            metadata=data.get("metadata") or {}
        )

    def get_authorized_payment(self, authorized_payment_id: str) -> ProcessorResource:
        data = self._get(f"/authorized_payments/{authorized_payment_id}")
        payment = data.get("payment") or {}
        return ProcessorResource(
            kind="authorized_payment",
            id=str(data.get("id", authorized_payment_id)),
            status=str(payment.get("status") or data.get("status") or ""),
            external_reference=_str_or_none(data.get("external_reference")),
            preapproval_id=_str_or_none(data.get("preapproval_id")),
            payment_id=_str_or_none(payment.get("id")) or str(data.get("id", authorized_payment_id)),
            amount=data.get("transaction_amount"),
            currency=data.get("currency_id"),
            date_created=parse_iso_datetime(data.get("date_created")),
            next_payment_date=parse_iso_datetime(data.get("next_retry_date")),
            last_modified=parse_iso_datetime(data.get("last_modified")),
            metadata=data.get("metadata") or {}
        )
