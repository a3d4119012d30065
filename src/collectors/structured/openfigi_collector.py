"""OpenFIGI collector for CUSIP to ticker symbol resolution."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

OPENFIGI_API_URL = "https://api.openfigi.com/v3/mapping"

# HTTP client timeout in seconds
HTTP_CLIENT_TIMEOUT = httpx.Timeout(30.0)

# Jobs allowed per mapping request
MAX_JOBS_WITH_KEY = 100
MAX_JOBS_WITHOUT_KEY = 10

# Minimum spacing between mapping requests
MIN_REQUEST_INTERVAL = 0.25

# Lookups (including misses) are cached for a week
CACHE_TTL_SECONDS = 7 * 24 * 60 * 60

# Exchange codes that denote a US listing
US_EXCHANGE_CODES = {"US", "UN", "UW", "UQ", "UA", "UR"}

# Well-known CUSIPs resolved without a network call
CUSIP_TO_TICKER: Dict[str, str] = {
    # Technology
    "037833100": "AAPL",
    "594918104": "MSFT",
    "02079K305": "GOOGL",
    "02079K107": "GOOG",
    "023135106": "AMZN",
    "30303M102": "META",
    "67066G104": "NVDA",
    "88160R101": "TSLA",
    "79466L302": "CRM",
    "00724F101": "ADBE",
    "17275R102": "CSCO",
    "458140100": "INTC",
    "038222105": "AMAT",
    "882508104": "TXN",
    # Financials
    "46625H100": "JPM",
    "084670108": "BRK.A",
    "084670702": "BRK.B",
    "92826C839": "V",
    "57636Q104": "MA",
    "060505104": "BAC",
    "172967424": "C",
    "38141G104": "GS",
    "949746101": "WFC",
    "808513105": "SCHW",
    "025816109": "AXP",
    # Health care
    "91324P102": "UNH",
    "478160104": "JNJ",
    "375558103": "GILD",
    "58933Y105": "MRK",
    "717081103": "PFE",
    "00287Y109": "ABBV",
    "110122108": "BMY",
    # Consumer
    "742718109": "PG",
    "22160K105": "COST",
    "931142103": "WMT",
    "254687106": "DIS",
    "191216100": "KO",
    "500754106": "KHC",
    "437076102": "HD",
    "654106103": "NKE",
    # Energy and industrials
    "30231G102": "XOM",
    "166764100": "CVX",
    "20825C104": "COP",
    "674599105": "OXY",
    "345370860": "F",
    "37045V100": "GM",
    "539830109": "LMT",
    # Telecom
    "00206R102": "T",
    "92343V104": "VZ",
    # ETFs
    "78462F103": "SPY",
    "464287200": "IVV",
}


@dataclass
class CusipMatch:
    """Result of resolving a single CUSIP."""

    cusip: str
    ticker: Optional[str] = None
    name: Optional[str] = None
    security_type: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "cusip": self.cusip,
            "ticker": self.ticker,
            "name": self.name,
            "security_type": self.security_type,
        }


def _pick_best_match(candidates: List[dict]) -> dict:
    """Choose the preferred listing: US exchanges first, then common stock."""
    best = candidates[0]
    for candidate in candidates:
        if (
            candidate.get("exchCode") in US_EXCHANGE_CODES
            and best.get("exchCode") not in US_EXCHANGE_CODES
        ):
            best = candidate
        if (
            candidate.get("securityType") == "Common Stock"
            and best.get("securityType") != "Common Stock"
        ):
            best = candidate
    return best


class OpenFIGICollector:
    """Resolves CUSIPs to ticker symbols via the OpenFIGI mapping API.

    Lookups go through a built-in table of common securities first, then an
    in-process TTL cache, and finally batched OpenFIGI mapping requests.
    """

    def __init__(
        self,
        api_key: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._api_key = api_key
        self._sleep = sleep
        self._clock = clock
        self._cache: Dict[str, Tuple[CusipMatch, float]] = {}
        self._last_request_at: Optional[float] = None

    @property
    def name(self) -> str:
        """Return collector name."""
        return "openfigi_collector"

    @property
    def source(self) -> str:
        """Return data source name."""
        return "openfigi"

    @property
    def max_jobs_per_request(self) -> int:
        return MAX_JOBS_WITH_KEY if self._api_key else MAX_JOBS_WITHOUT_KEY

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-OPENFIGI-APIKEY"] = self._api_key
        return headers

    def _get_cached(self, cusip: str) -> Optional[CusipMatch]:
        entry = self._cache.get(cusip)
        if entry is None:
            return None
        match, stored_at = entry
        if self._clock() - stored_at > CACHE_TTL_SECONDS:
            del self._cache[cusip]
            return None
        return match

    def _set_cached(self, match: CusipMatch) -> None:
        self._cache[match.cusip] = (match, self._clock())

    async def _throttle(self) -> None:
        """Keep at least MIN_REQUEST_INTERVAL between mapping requests."""
        if self._last_request_at is not None:
            elapsed = self._clock() - self._last_request_at
            if elapsed < MIN_REQUEST_INTERVAL:
                await self._sleep(MIN_REQUEST_INTERVAL - elapsed)
        self._last_request_at = self._clock()

    async def lookup_cusips(self, cusips: Iterable[str]) -> Dict[str, CusipMatch]:
        """
        Look up CUSIPs through the OpenFIGI mapping API.

        Args:
            cusips: 9-character CUSIP identifiers

        Returns:
            Dictionary mapping each CUSIP to a CusipMatch. Unresolved CUSIPs
            map to a CusipMatch whose ticker is None.

        Note:
            API and network errors are logged and leave the affected CUSIPs
            unresolved; they are never raised.
        """
        results: Dict[str, CusipMatch] = {}
        pending: List[str] = []
        for cusip in dict.fromkeys(cusips):
            cached = self._get_cached(cusip)
            if cached is not None:
                results[cusip] = cached
            else:
                pending.append(cusip)

        if not pending:
            return results

        chunk_size = self.max_jobs_per_request
        async with httpx.AsyncClient(
            timeout=HTTP_CLIENT_TIMEOUT,
            headers=self._get_headers(),
        ) as client:
            for start in range(0, len(pending), chunk_size):
                chunk = pending[start:start + chunk_size]
                results.update(await self._map_chunk(client, chunk))

        return results

    async def _map_chunk(
        self,
        client: httpx.AsyncClient,
        chunk: List[str],
    ) -> Dict[str, CusipMatch]:
        """Send one mapping request and interpret the per-job responses."""
        await self._throttle()
        jobs = [{"idType": "ID_CUSIP", "idValue": cusip} for cusip in chunk]

        try:
            response = await client.post(OPENFIGI_API_URL, json=jobs)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"OpenFIGI API error for {len(chunk)} CUSIPs: {e}")
            misses = {cusip: CusipMatch(cusip=cusip) for cusip in chunk}
            for match in misses.values():
                self._set_cached(match)
            return misses
        except (httpx.RequestError, ValueError) as e:
            logger.error(f"OpenFIGI request failed for {len(chunk)} CUSIPs: {e}")
            return {cusip: CusipMatch(cusip=cusip) for cusip in chunk}

        matches: Dict[str, CusipMatch] = {}
        for index, cusip in enumerate(chunk):
            job_result = payload[index] if index < len(payload) else {}
            candidates = job_result.get("data") or []
            if job_result.get("error") or not candidates:
                match = CusipMatch(cusip=cusip)
            else:
                best = _pick_best_match(candidates)
                match = CusipMatch(
                    cusip=cusip,
                    ticker=best.get("ticker"),
                    name=best.get("name"),
                    security_type=best.get("securityType"),
                )
            self._set_cached(match)
            matches[cusip] = match
        return matches

    async def resolve_tickers(self, cusips: Iterable[str]) -> Dict[str, Optional[str]]:
        """
        Resolve ticker symbols for a collection of CUSIPs.

        Args:
            cusips: CUSIP identifiers; blanks are ignored

        Returns:
            Dictionary mapping CUSIP to ticker symbol, or None if unknown
        """
        tickers: Dict[str, Optional[str]] = {}
        needs_lookup: List[str] = []
        for cusip in cusips:
            if not cusip or cusip in tickers:
                continue
            known = CUSIP_TO_TICKER.get(cusip)
            if known:
                tickers[cusip] = known
            else:
                tickers[cusip] = None
                needs_lookup.append(cusip)

        if needs_lookup:
            matches = await self.lookup_cusips(needs_lookup)
            for cusip, match in matches.items():
                tickers[cusip] = match.ticker

        resolved = sum(1 for t in tickers.values() if t)
        logger.debug(f"Resolved {resolved}/{len(tickers)} CUSIPs to tickers")
        return tickers
