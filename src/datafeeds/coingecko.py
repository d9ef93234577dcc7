"""CoinGecko simple-price client with exponential backoff retry."""

import asyncio
import json
from typing import List, Optional

import aiohttp
from loguru import logger

COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"


class CoinGeckoPriceOracle:
    """
    Resolves the current price of a coin by its CoinGecko id.

    `get_price` never raises for network or API problems: every failure mode
    ends as None ("price unavailable") after the configured retries.
    """

    def __init__(
        self,
        base_url: str = COINGECKO_API_BASE,
        vs_currency: str = "usd",
        timeout: float = 10,
        retry_delays: Optional[List[float]] = None,
        api_key: Optional[str] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.vs_currency = vs_currency
        self.timeout = timeout
        # delays between attempts: len(retry_delays) + 1 attempts in total
        self.retry_delays = [2, 4] if retry_delays is None else list(retry_delays)
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    def _extract_price(self, data: dict, coin_id: str) -> Optional[float]:
        """Pull data[coin_id][vs_currency]; anything missing or non-numeric -> None."""
        coin_data = data.get(coin_id) if isinstance(data, dict) else None
        if not isinstance(coin_data, dict):
            return None
        value = coin_data.get(self.vs_currency)
        try:
            price = float(value)
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None

    async def get_price(self, coin_id: str) -> Optional[float]:
        """
        Fetch current price for one coin.

        Args:
            coin_id: CoinGecko coin id (e.g., "bitcoin")

        Returns:
            Price in vs_currency, or None if unavailable
        """
        url = f"{self.base_url}/simple/price"
        params = {"ids": coin_id, "vs_currencies": self.vs_currency}
        attempts = len(self.retry_delays) + 1

        for attempt in range(1, attempts + 1):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.get(
                        url,
                        params=params,
                        headers=self._headers(),
                        timeout=aiohttp.ClientTimeout(total=self.timeout)
                    ) as response:
                        if response.status == 200:
                            data = await response.json()
                            price = self._extract_price(data, coin_id)
                            if price is None:
                                # Unknown id or delisted coin: retrying won't help
                                logger.warning(f"No {self.vs_currency} price for '{coin_id}' in CoinGecko response")
                            return price

                        if response.status == 429 or response.status >= 500:
                            logger.warning(
                                f"CoinGecko error for {coin_id} (attempt {attempt}/{attempts}): "
                                f"status {response.status}"
                            )
                        else:
                            logger.error(f"CoinGecko rejected request for {coin_id}: status {response.status}")
                            return None

            except asyncio.TimeoutError:
                logger.warning(f"CoinGecko timeout for {coin_id} (attempt {attempt}/{attempts})")
            except aiohttp.ClientError as e:
                logger.warning(f"CoinGecko connection error for {coin_id} (attempt {attempt}/{attempts}): {e}")
            except json.JSONDecodeError as e:
                logger.warning(f"CoinGecko invalid JSON for {coin_id} (attempt {attempt}/{attempts}): {e}")

            if attempt < attempts:
                delay = self.retry_delays[attempt - 1]
                logger.debug(f"Retrying {coin_id} price in {delay}s...")
                await asyncio.sleep(delay)

        logger.error(f"Price for {coin_id} unavailable after {attempts} attempts")
        return None


def get_price_oracle() -> CoinGeckoPriceOracle:
    """Build the oracle from config."""
    from src.config import get_price_oracle_config

    cfg = get_price_oracle_config()
    return CoinGeckoPriceOracle(
        base_url=cfg['base_url'],
        vs_currency=cfg['vs_currency'],
        timeout=cfg['timeout'],
        retry_delays=cfg['retry_delays'],
        api_key=cfg['api_key']
    )
