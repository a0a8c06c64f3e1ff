from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import json
from typing import Dict, Iterable, List, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from moneytrack import settings
from moneytrack.errors import UpstreamUnavailable
from moneytrack.logging_config import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")

TAIWAN_STOCK = "台股"
US_STOCK = "美股"
CRYPTO = "加密貨幣"

MARKET_ALIASES = {
    "台股": TAIWAN_STOCK,
    "taiwan stocks": TAIWAN_STOCK,
    "tw": TAIWAN_STOCK,
    "美股": US_STOCK,
    "us stocks": US_STOCK,
    "us": US_STOCK,
    "加密貨幣": CRYPTO,
    "crypto": CRYPTO,
}

CRYPTO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDT": "tether",
    "BNB": "binancecoin",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "MATIC": "matic-network",
    "DOT": "polkadot",
}


class PriceUnavailable(UpstreamUnavailable):
    """Raised by a price source that has no usable quote."""


def normalize_market(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return MARKET_ALIASES.get(value.strip().lower(), MARKET_ALIASES.get(value.strip()))


@dataclass(frozen=True)
class PriceQuery:
    ticker: str
    market: Optional[str]


@dataclass(frozen=True)
class HoldingPrice:
    id: int
    ticker: str
    market: Optional[str]
    current_price: Decimal


@dataclass(frozen=True)
class PriceRefresh:
    holding_id: int
    ticker: str
    price: Decimal
    updated: bool


class MarketPriceOracle:
    yahoo_url = "https://query1.finance.yahoo.com/v8/finance/chart/{ticker}"
    twse_url = "https://mis.twse.com.tw/stock/api/getStockInfo.jsp?ex_ch=tse_{ticker}.tw"
    coingecko_url = "https://api.coingecko.com/api/v3/simple/price?ids={coin_id}&vs_currencies=usd"

    def __init__(self, timeout_seconds: int = settings.PRICE_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    def get_price(self, ticker: str, market: Optional[str]) -> Optional[Decimal]:
        normalized_market = normalize_market(market)
        try:
            if normalized_market == TAIWAN_STOCK:
                price = self.twse_price(ticker)
            elif normalized_market == CRYPTO:
                price = self.crypto_price(ticker)
            else:
                price = self.yahoo_price(ticker)
        except UpstreamUnavailable as exc:
            logger.warning("price_unavailable", ticker=ticker, market=market, error=str(exc))
            return None
        logger.debug("price_fetched", ticker=ticker, market=market, price=str(price))
        return price

    def yahoo_price(self, ticker: str) -> Decimal:
        payload = self._fetch_json(self.yahoo_url.format(ticker=quote(ticker)))
        try:
            raw = payload["chart"]["result"][0]["meta"]["regularMarketPrice"]
        except (KeyError, IndexError, TypeError) as exc:
            raise PriceUnavailable(f"Yahoo Finance has no quote for {ticker}") from exc
        return _positive_price(raw, ticker)

    def twse_price(self, ticker: str) -> Decimal:
        payload = self._fetch_json(
            self.twse_url.format(ticker=quote(ticker)),
            headers={"User-Agent": "Mozilla/5.0"},
        )
        try:
            stock = payload["msgArray"][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise PriceUnavailable(f"TWSE has no quote for {ticker}") from exc
        # "z" is the last trade; it reads "-" between trades, so fall back to "y" (previous close).
        for key in ("z", "y"):
            value = stock.get(key)
            try:
                return _positive_price(value, ticker)
            except PriceUnavailable:
                continue
        raise PriceUnavailable(f"TWSE has no quote for {ticker}")

    def crypto_price(self, ticker: str) -> Decimal:
        coin_id = CRYPTO_IDS.get(ticker.strip().upper())
        if not coin_id:
            raise PriceUnavailable(f"Unknown crypto ticker: {ticker}")
        payload = self._fetch_json(self.coingecko_url.format(coin_id=coin_id))
        try:
            raw = payload[coin_id]["usd"]
        except (KeyError, TypeError) as exc:
            raise PriceUnavailable(f"CoinGecko has no quote for {ticker}") from exc
        return _positive_price(raw, ticker)

    def _fetch_json(self, url: str, headers: Optional[Mapping[str, str]] = None) -> object:
        request = Request(url, headers=dict(headers or {}))
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                return json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise PriceUnavailable(f"Price source unavailable: {url}") from exc


def fetch_prices(queries: Iterable[PriceQuery], oracle: MarketPriceOracle) -> Dict[PriceQuery, Decimal]:
    unique = set(queries)
    prices: Dict[PriceQuery, Decimal] = {}
    for query in unique:
        price = oracle.get_price(query.ticker, query.market)
        if price is not None:
            prices[query] = price
    logger.info("prices_fetched", requested=len(unique), fetched=len(prices))
    return prices


def refresh_current_prices(
    holdings: Iterable[HoldingPrice], oracle: MarketPriceOracle
) -> List[PriceRefresh]:
    """New current price per holding; unavailable quotes keep the old price."""
    holdings = list(holdings)
    prices = fetch_prices((PriceQuery(h.ticker, h.market) for h in holdings), oracle)
    refreshed: List[PriceRefresh] = []
    for holding in holdings:
        price = prices.get(PriceQuery(holding.ticker, holding.market))
        if price is None:
            refreshed.append(
                PriceRefresh(
                    holding_id=holding.id,
                    ticker=holding.ticker,
                    price=holding.current_price,
                    updated=False,
                )
            )
        else:
            refreshed.append(
                PriceRefresh(holding_id=holding.id, ticker=holding.ticker, price=price, updated=True)
            )
    return refreshed


def _positive_price(value: object, ticker: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise PriceUnavailable(f"No price for {ticker}")
    try:
        price = Decimal(str(value))
    except InvalidOperation as exc:
        raise PriceUnavailable(f"Malformed price for {ticker}: {value}") from exc
    if not price.is_finite() or price <= ZERO:
        raise PriceUnavailable(f"No price for {ticker}")
    return price
