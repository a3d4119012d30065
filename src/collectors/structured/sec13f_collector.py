"""SEC EDGAR 13F collector for institutional holdings data."""
import asyncio
import calendar
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
import logging

import httpx

from src.collectors.structured.openfigi_collector import OpenFIGICollector

logger = logging.getLogger(__name__)

# SEC EDGAR API base URLs
SEC_SEARCH_URL = "https://efts.sec.gov/LATEST/search-index"
SEC_ARCHIVES_URL = "https://www.sec.gov/Archives/edgar/data/{cik}/{accession_number}"

# HTTP client timeout in seconds
HTTP_CLIENT_TIMEOUT = httpx.Timeout(60.0)

# SEC requires User-Agent header with contact information
SEC_USER_AGENT = "InsiderIntel support@insiderintel.io"

# SEC allows 10 requests/second
REQUEST_DELAY = 0.1

# Retry configuration for transient EDGAR failures
MAX_RETRIES = 3
RETRY_DELAY = 1.0

# Upper bound on a server-requested Retry-After wait
MAX_RETRY_AFTER = 10.0

# Default number of search results to request
DEFAULT_SEARCH_SIZE = 100
DEFAULT_CIK_SEARCH_SIZE = 10

# Filenames commonly used for the 13F information table
INFOTABLE_FILENAMES = [
    "infotable.xml",
    "InfoTable.xml",
    "INFOTABLE.XML",
]

# Filings made from this date report values in dollars instead of thousands
DOLLAR_VALUES_EFFECTIVE = date(2023, 1, 3)

# Search display names end with "(CIK 0001067983)"
_DISPLAY_NAME_CIK_SUFFIX = re.compile(r"\s*\(CIK \d+\)\s*$")


class EdgarError(Exception):
    """Raised when SEC EDGAR cannot be reached or returns unusable data."""


class FilingParseError(EdgarError):
    """Raised when a 13F information table cannot be parsed."""


@dataclass
class FilingMetadata:
    """Lightweight metadata for a 13F-HR filing from EDGAR search."""

    accession_number: str
    cik: str
    filer_name: str
    filed_at: date
    form_type: str = "13F-HR"
    period_of_report: Optional[date] = None

    @property
    def accession_number_no_dashes(self) -> str:
        return self.accession_number.replace("-", "")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "accession_number": self.accession_number,
            "cik": self.cik,
            "filer_name": self.filer_name,
            "filed_at": self.filed_at,
            "form_type": self.form_type,
            "period_of_report": self.period_of_report,
        }


@dataclass
class HoldingRecord:
    """Data class for a single position line of a 13F information table."""

    name_of_issuer: str
    cusip: str
    value: Decimal
    shares: int
    title_of_class: str = ""
    share_type: str = "SH"
    investment_discretion: str = "SOLE"
    voting_sole: int = 0
    voting_shared: int = 0
    voting_none: int = 0
    ticker: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "name_of_issuer": self.name_of_issuer,
            "title_of_class": self.title_of_class,
            "cusip": self.cusip,
            "value": self.value,
            "shares": self.shares,
            "share_type": self.share_type,
            "investment_discretion": self.investment_discretion,
            "voting_sole": self.voting_sole,
            "voting_shared": self.voting_shared,
            "voting_none": self.voting_none,
            "ticker": self.ticker,
        }


@dataclass
class ParsedHoldings:
    """All holdings of one 13F filing plus the filing's total value."""

    holdings: List[HoldingRecord] = field(default_factory=list)
    total_value: Decimal = Decimal("0")

    @property
    def total_holdings(self) -> int:
        return len(self.holdings)


def quarter_search_range(year: int, quarter: int) -> Tuple[date, date]:
    """
    Date range to search for filings covering a fiscal quarter.

    13F reports are due 45 days after quarter end, so the range runs from the
    first day of the quarter to the 28th of the second month after it.

    Args:
        year: Fiscal year
        quarter: Quarter number (1-4)

    Returns:
        Tuple of (start_date, end_date)
    """
    if quarter not in (1, 2, 3, 4):
        raise ValueError(f"quarter must be 1-4, got {quarter}")

    start = date(year, (quarter - 1) * 3 + 1, 1)
    end_month = quarter * 3 + 2
    end_year = year
    if end_month > 12:
        end_month -= 12
        end_year += 1
    return start, date(end_year, end_month, 28)


def quarter_end_date(year: int, quarter: int) -> date:
    """Return the last calendar day of a fiscal quarter."""
    if quarter not in (1, 2, 3, 4):
        raise ValueError(f"quarter must be 1-4, got {quarter}")
    month = quarter * 3
    return date(year, month, calendar.monthrange(year, month)[1])


def build_filing_url(cik: str, accession_number: str) -> str:
    """Build the EDGAR index page URL for a filing."""
    formatted_cik = cik.lstrip("0")
    no_dashes = accession_number.replace("-", "")
    if "-" in accession_number:
        with_dashes = accession_number
    else:
        with_dashes = f"{no_dashes[:10]}-{no_dashes[10:12]}-{no_dashes[12:]}"
    base_url = SEC_ARCHIVES_URL.format(cik=formatted_cik, accession_number=no_dashes)
    return f"{base_url}/{with_dashes}-index.htm"


def _local_name(tag: str) -> str:
    """Strip any XML namespace from an element tag."""
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    """Text of the first descendant with the given local name."""
    for child in element.iter():
        if child is not element and _local_name(child.tag) == name:
            return (child.text or "").strip()
    return None


def _parse_int(text: Optional[str]) -> int:
    if not text:
        return 0
    return int(text.replace(",", "").strip())


def _parse_date(text: Optional[str]) -> Optional[date]:
    if not text:
        return None
    return date.fromisoformat(text[:10])


class SEC13FCollector:
    """Collector for institutional holdings data from SEC EDGAR 13F filings."""

    def __init__(
        self,
        user_agent: str = SEC_USER_AGENT,
        ticker_resolver: Optional[OpenFIGICollector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the SEC 13F collector."""
        self._user_agent = user_agent
        self._ticker_resolver = ticker_resolver or OpenFIGICollector()
        self._sleep = sleep

    @property
    def name(self) -> str:
        """Return collector name."""
        return "sec13f_collector"

    @property
    def source(self) -> str:
        """Return data source name."""
        return "sec_edgar"

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for SEC EDGAR requests."""
        return {
            "User-Agent": self._user_agent,
            "Accept": "application/json, text/xml, */*",
        }

    def _format_cik(self, cik: str) -> str:
        """Format CIK to 10 digits with leading zeros."""
        return cik.lstrip("0").zfill(10)

    def _format_accession_for_url(self, accession_number: str) -> str:
        """Format accession number for URL (remove dashes)."""
        return accession_number.replace("-", "")

    async def _get_with_retry(self, client: httpx.AsyncClient, url: str, **kwargs) -> httpx.Response:
        """
        GET a URL, retrying rate limits, server errors and network errors.

        Returns the last response received; raises EdgarError when no
        response could be obtained.
        """
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await client.get(url, **kwargs)
            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"Network error fetching {url} (attempt {attempt + 1}): {e}")
                if attempt < MAX_RETRIES:
                    await self._sleep(RETRY_DELAY * (attempt + 1))
                continue

            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                try:
                    wait = float(retry_after) if retry_after else RETRY_DELAY * (attempt + 1)
                except ValueError:
                    wait = RETRY_DELAY * (attempt + 1)
                wait = min(wait, MAX_RETRY_AFTER)
                last_error = EdgarError(f"Rate limited by SEC EDGAR: {url}")
                logger.warning(f"SEC EDGAR rate limit hit, waiting {wait:.1f}s")
                if attempt < MAX_RETRIES:
                    await self._sleep(wait)
                continue

            if response.status_code >= 500 and attempt < MAX_RETRIES:
                logger.warning(f"SEC EDGAR returned {response.status_code} for {url}, retrying")
                await self._sleep(RETRY_DELAY * (attempt + 1))
                continue

            return response

        raise EdgarError(f"Failed to fetch {url} after {MAX_RETRIES + 1} attempts: {last_error}")

    def _parse_search_hits(self, data: dict) -> List[FilingMetadata]:
        """Convert an EDGAR full-text search response into FilingMetadata."""
        try:
            hits = data["hits"]["hits"]
        except (KeyError, TypeError) as e:
            raise EdgarError(f"Malformed SEC search response: missing {e}") from e

        filings = []
        for hit in hits:
            source = hit.get("_source", {})
            accession_number = source.get("adsh")
            filed_at = _parse_date(source.get("file_date"))
            if not accession_number or filed_at is None:
                logger.warning(f"Skipping search hit without accession or file date: {hit.get('_id')}")
                continue

            ciks = source.get("ciks") or [""]
            names = source.get("display_names") or [""]
            filings.append(FilingMetadata(
                accession_number=accession_number,
                cik=self._format_cik(ciks[0]) if ciks[0] else "",
                filer_name=_DISPLAY_NAME_CIK_SUFFIX.sub("", names[0]).strip(),
                filed_at=filed_at,
                form_type=source.get("form", "13F-HR"),
                period_of_report=_parse_date(source.get("period_ending")),
            ))
        return filings

    async def _search(self, params: Dict[str, str]) -> List[FilingMetadata]:
        await self._sleep(REQUEST_DELAY)
        try:
            async with httpx.AsyncClient(
                timeout=HTTP_CLIENT_TIMEOUT,
                headers=self._get_headers(),
            ) as client:
                response = await self._get_with_retry(client, SEC_SEARCH_URL, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise EdgarError(f"SEC search API error: {e.response.status_code}") from e
        except ValueError as e:
            raise EdgarError(f"SEC search API returned invalid JSON: {e}") from e

        return self._parse_search_hits(data)

    async def fetch_quarter_filings(
        self,
        year: int,
        quarter: int,
        size: int = DEFAULT_SEARCH_SIZE,
    ) -> List[FilingMetadata]:
        """
        Fetch 13F-HR filings covering a fiscal quarter.

        Args:
            year: Fiscal year (e.g. 2024)
            quarter: Quarter number (1-4)
            size: Maximum number of search results

        Returns:
            List of FilingMetadata in search order

        Raises:
            EdgarError: if EDGAR is unreachable or the response is malformed
        """
        start, end = quarter_search_range(year, quarter)
        params = {
            "q": "*",
            "forms": "13F-HR",
            "dateRange": "custom",
            "startdt": start.isoformat(),
            "enddt": end.isoformat(),
            "size": str(size),
        }
        filings = await self._search(params)
        logger.info(f"EDGAR search returned {len(filings)} 13F-HR filings for {year}Q{quarter}")
        return filings

    async def fetch_filings_by_cik(
        self,
        cik: str,
        size: int = DEFAULT_CIK_SEARCH_SIZE,
    ) -> List[FilingMetadata]:
        """
        Fetch recent 13F-HR filings for a single institution.

        Raises:
            EdgarError: if EDGAR is unreachable or the response is malformed
        """
        params = {
            "q": f"ciks:{cik.lstrip('0')}",
            "forms": "13F-HR",
            "size": str(size),
        }
        return await self._search(params)

    async def fetch_infotable_xml(self, cik: str, accession_number: str) -> str:
        """
        Fetch the raw information table XML of a 13F filing.

        Tries the common infotable filenames first, then falls back to the
        filing's index.json listing.

        Raises:
            EdgarError: if no information table could be retrieved
        """
        base_url = SEC_ARCHIVES_URL.format(
            cik=cik.lstrip("0"),
            accession_number=self._format_accession_for_url(accession_number),
        )
        last_error: Optional[Exception] = None

        async with httpx.AsyncClient(
            timeout=HTTP_CLIENT_TIMEOUT,
            headers=self._get_headers(),
        ) as client:
            for filename in INFOTABLE_FILENAMES:
                await self._sleep(REQUEST_DELAY)
                try:
                    response = await self._get_with_retry(client, f"{base_url}/{filename}")
                except EdgarError as e:
                    last_error = e
                    continue
                if response.status_code == 200:
                    return response.text

            await self._sleep(REQUEST_DELAY)
            try:
                index_response = await self._get_with_retry(client, f"{base_url}/index.json")
                if index_response.status_code == 200:
                    items = index_response.json().get("directory", {}).get("item", [])
                    for item in items:
                        item_name = item.get("name", "")
                        lowered = item_name.lower()
                        if "infotable" in lowered or "information_table" in lowered:
                            await self._sleep(REQUEST_DELAY)
                            response = await self._get_with_retry(client, f"{base_url}/{item_name}")
                            if response.status_code == 200:
                                return response.text
                            break
            except (EdgarError, ValueError) as e:
                last_error = e
                logger.debug(f"Index lookup failed for {accession_number}: {e}")

        raise EdgarError(
            f"Failed to fetch 13F holdings for CIK {cik}, accession {accession_number}"
            + (f": {last_error}" if last_error else "")
        )

    def parse_holdings_xml(
        self,
        xml_content: str,
        value_in_thousands: bool = False,
    ) -> ParsedHoldings:
        """
        Parse 13F holdings from information table XML.

        Args:
            xml_content: Raw XML content of the information table
            value_in_thousands: True for filings that report values in
                thousands of dollars (filed before 2023-01-03)

        Returns:
            ParsedHoldings with every valid position and their total value

        Raises:
            FilingParseError: if the document is not well-formed XML
        """
        try:
            root = ET.fromstring(xml_content)
        except ET.ParseError as e:
            raise FilingParseError(f"XML parse error: {e}") from e

        multiplier = 1000 if value_in_thousands else 1
        parsed = ParsedHoldings()

        for info_table in root.iter():
            if _local_name(info_table.tag) != "infoTable":
                continue
            try:
                value = Decimal(_parse_int(_child_text(info_table, "value")) * multiplier)
                share_type = (_child_text(info_table, "sshPrnamtType") or "SH").upper()
                holding = HoldingRecord(
                    name_of_issuer=_child_text(info_table, "nameOfIssuer") or "",
                    title_of_class=_child_text(info_table, "titleOfClass") or "",
                    cusip=(_child_text(info_table, "cusip") or "").upper(),
                    value=value,
                    shares=_parse_int(_child_text(info_table, "sshPrnamt")),
                    share_type="PRN" if share_type == "PRN" else "SH",
                    investment_discretion=_child_text(info_table, "investmentDiscretion") or "SOLE",
                    voting_sole=_parse_int(_child_text(info_table, "Sole")),
                    voting_shared=_parse_int(_child_text(info_table, "Shared")),
                    voting_none=_parse_int(_child_text(info_table, "None")),
                )
            except (ValueError, TypeError, InvalidOperation) as e:
                logger.warning(f"Skipping invalid holding entry: {e}")
                continue

            parsed.holdings.append(holding)
            parsed.total_value += value

        return parsed

    async def fetch_and_parse_holdings(
        self,
        cik: str,
        accession_number: str,
        enrich_tickers: bool = True,
        filed_at: Optional[date] = None,
    ) -> ParsedHoldings:
        """
        Fetch, parse and optionally ticker-enrich the holdings of a filing.

        Args:
            cik: Institution CIK number
            accession_number: Filing accession number
            enrich_tickers: Resolve CUSIPs to tickers via OpenFIGI
            filed_at: Filing date, used to pick the value unit

        Raises:
            EdgarError: if the filing could not be fetched
            FilingParseError: if the information table is malformed
        """
        xml_content = await self.fetch_infotable_xml(cik, accession_number)
        value_in_thousands = filed_at is not None and filed_at < DOLLAR_VALUES_EFFECTIVE
        parsed = self.parse_holdings_xml(xml_content, value_in_thousands=value_in_thousands)

        if enrich_tickers and parsed.holdings:
            tickers = await self._ticker_resolver.resolve_tickers(
                h.cusip for h in parsed.holdings if h.cusip
            )
            for holding in parsed.holdings:
                holding.ticker = tickers.get(holding.cusip)

        return parsed
