"""Clients that fetch transactions from a payment processor's ledger."""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ..errors import ErrorKind, ReconciliationError
from ..timeutils import to_naive_utc, utc_now
from .adapters import from_remote_payload
from .models import TransactionRecord

logger = logging.getLogger(__name__)

DEFAULT_CLICPAGO_API_URL = "https://botonpp.macroclickpago.com.ar:8082/v1"
DEFAULT_TIMEOUT = 10.0
DEFAULT_SESSION_TTL = 1800.0
DEFAULT_PAGE_SIZE = 100


class LedgerFetcherBase(ABC):
    """Base class for remote ledger fetchers."""

    @abstractmethod
    async def fetch_transactions(
        self,
        start_time: datetime,
        end_time: datetime,
    ) -> List[TransactionRecord]:
        """Fetch the processor's transactions dated within a time window.

        Args:
            start_time: Start of the window (inclusive).
            end_time: End of the window (inclusive).

        Returns:
            Normalized records.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release network resources held by the fetcher."""

    async def __aenter__(self) -> "LedgerFetcherBase":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


@dataclass
class LedgerSession:
    """Authenticated session with the processor API."""
    token: str
    issued_at: datetime
    ttl_seconds: float
    secret_key: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at


class ClicPagoFetcher(LedgerFetcherBase):
    """Fetcher for the Macro Click de Pago transactions API.

    Credentials are exchanged for a bearer token at ``/sesion``. The token is
    kept in an explicit ``LedgerSession`` and reused until it expires or the
    API rejects it.
    """

    def __init__(
        self,
        guid: Optional[str] = None,
        passphrase: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session_ttl: Optional[float] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the fetcher.

        Args:
            guid: Merchant GUID. Falls back to CLICPAGO_GUID env var.
            passphrase: Merchant passphrase. Falls back to CLICPAGO_PASSPHRASE.
            base_url: API base URL. Falls back to CLICPAGO_API_URL.
            timeout: Request timeout in seconds. Falls back to CLICPAGO_TIMEOUT.
            session_ttl: Seconds a session token is reused. Falls back to
                CLICPAGO_SESSION_TTL.
            page_size: Records requested per page.
            transport: Optional httpx transport, mainly for tests.

        Raises:
            ReconciliationError: If credentials are missing.
        """
        self._guid = guid or os.getenv("CLICPAGO_GUID")
        self._passphrase = passphrase or os.getenv("CLICPAGO_PASSPHRASE")
        if not self._guid or not self._passphrase:
            raise ReconciliationError(
                ErrorKind.CONFIGURATION,
                "CLICPAGO_GUID and CLICPAGO_PASSPHRASE must be provided either as "
                "arguments or environment variables",
            )

        self.base_url = base_url or os.getenv("CLICPAGO_API_URL", DEFAULT_CLICPAGO_API_URL)
        self.timeout = timeout or float(os.getenv("CLICPAGO_TIMEOUT", DEFAULT_TIMEOUT))
        self.session_ttl = session_ttl or float(os.getenv("CLICPAGO_SESSION_TTL", DEFAULT_SESSION_TTL))
        self.page_size = page_size
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
        )
        self._session: Optional[LedgerSession] = None

    @property
    def session(self) -> Optional[LedgerSession]:
        return self._session

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Processor API unreachable: {type(e).__name__}")
            raise ReconciliationError(
                ErrorKind.EXTERNAL_API,
                f"Failed to connect to processor API: {e}",
                details={"url": url},
            ) from e
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Processor API error {response.status_code} on {e.request.url.path}")
            raise ReconciliationError(
                ErrorKind.EXTERNAL_API,
                f"Processor API returned {response.status_code}",
                details={"status_code": response.status_code, "path": e.request.url.path},
            ) from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ReconciliationError(
                ErrorKind.EXTERNAL_API,
                "Processor API returned a non-JSON response",
            ) from e
        if not isinstance(body, dict):
            raise ReconciliationError(
                ErrorKind.EXTERNAL_API,
                "Processor API returned an unexpected payload",
            )
        return body

    async def open_session(self, now: Optional[datetime] = None) -> LedgerSession:
        """Exchange the merchant credentials for a session token.

        Returns:
            The new session, which is also stored on the fetcher.

        Raises:
            ReconciliationError: If the API rejects the credentials.
        """
        logger.info(f"Opening processor session at {self.base_url}/sesion")
        response = await self._request(
            "POST",
            "/sesion",
            json={"guid": self._guid, "frase": self._passphrase},
        )
        self._raise_for_status(response)
        body = self._json(response)

        if body.get("status") is not True or not body.get("data"):
            raise ReconciliationError(
                ErrorKind.EXTERNAL_API,
                body.get("message") or "Processor API rejected the credentials",
            )

        self._session = LedgerSession(
            token=str(body["data"]),
            issued_at=now or utc_now(),
            ttl_seconds=self.session_ttl,
            secret_key=body.get("secretKey"),
        )
        return self._session

    async def _active_session(self) -> LedgerSession:
        if self._session is None or self._session.is_expired():
            return await self.open_session()
        return self._session

    async def _fetch_page(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._active_session()
        response = await self._request(
            "GET",
            "/transacciones",
            params=params,
            headers={"Authorization": f"Bearer {session.token}"},
        )
        if response.status_code == 401:
            # Token revoked before its TTL ran out; retry once with a new one
            logger.info("Processor session rejected, reopening")
            session = await self.open_session()
            response = await self._request(
                "GET",
                "/transacciones",
                params=params,
                headers={"Authorization": f"Bearer {session.token}"},
            )
        self._raise_for_status(response)
        return self._json(response)

    async def fetch_transactions(
        self,
        start_time: datetime,
        end_time: datetime,
    ) -> List[TransactionRecord]:
        """Fetch all pages of transactions for the window.

        The API filters by calendar date, so records outside the exact
        window are dropped after mapping.

        Raises:
            ReconciliationError: On transport, HTTP or payload errors.
        """
        start_time = to_naive_utc(start_time)
        end_time = to_naive_utc(end_time)
        logger.info(
            f"Fetching processor transactions from {start_time.isoformat()} "
            f"to {end_time.isoformat()}"
        )

        records: List[TransactionRecord] = []
        page = 0
        while True:
            body = await self._fetch_page({
                "fechaDesde": start_time.strftime("%Y-%m-%d"),
                "fechaHasta": end_time.strftime("%Y-%m-%d"),
                "paginaActual": page,
                "cantidadRegistros": self.page_size,
            })
            rows = body.get("data") or []
            for row in rows:
                record = from_remote_payload(row)
                if start_time <= record.transaction_date <= end_time:
                    records.append(record)

            total_pages = int(body.get("totalPaginas") or 0)
            page += 1
            if not rows or page >= total_pages:
                break

        logger.info(f"Fetched {len(records)} transactions over {page} page(s)")
        return records


class InMemoryLedgerFetcher(LedgerFetcherBase):
    """Serves a fixed list of records; used for tests and dry runs."""

    def __init__(self, records: Optional[Iterable[TransactionRecord]] = None, **_: Any):
        self.records: List[TransactionRecord] = list(records or [])

    async def fetch_transactions(
        self,
        start_time: datetime,
        end_time: datetime,
    ) -> List[TransactionRecord]:
        start_time = to_naive_utc(start_time)
        end_time = to_naive_utc(end_time)
        return [
            r for r in self.records
            if start_time <= r.transaction_date <= end_time
        ]


def get_ledger_fetcher(provider: str = "clicpago", **kwargs: Any) -> LedgerFetcherBase:
    """Factory function to get the fetcher for a processor.

    Args:
        provider: Processor name.
        **kwargs: Passed to the fetcher constructor.

    Raises:
        ReconciliationError: VALIDATION if the provider is not supported.
    """
    fetchers = {
        "clicpago": ClicPagoFetcher,
        "memory": InMemoryLedgerFetcher,
    }

    fetcher_class = fetchers.get(provider.lower())
    if not fetcher_class:
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            f"Unsupported ledger provider: {provider}",
            details={"provider": provider, "supported": sorted(fetchers)},
        )

    return fetcher_class(**kwargs)
