"""Tests for the CoinGecko price oracle."""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from src.datafeeds.coingecko import CoinGeckoPriceOracle, get_price_oracle


def mock_client_session(responses):
    """
    Build a patched aiohttp.ClientSession whose get() yields the given
    responses in order. Each item is (status, payload) or an exception.
    """
    session = MagicMock()
    effects = []
    for item in responses:
        if isinstance(item, BaseException):
            effects.append(item)
            continue
        status, payload = item
        response = MagicMock()
        response.status = status
        response.json = AsyncMock(return_value=payload)
        get_cm = MagicMock()
        get_cm.__aenter__ = AsyncMock(return_value=response)
        get_cm.__aexit__ = AsyncMock(return_value=False)
        effects.append(get_cm)
    session.get.side_effect = effects

    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return session_cm, session


@pytest.fixture
def oracle() -> CoinGeckoPriceOracle:
    return CoinGeckoPriceOracle(base_url="https://api.coingecko.test/api/v3", retry_delays=[0, 0])


class TestExtractPrice:

    def test_extract_price(self, oracle):
        assert oracle._extract_price({"bitcoin": {"usd": 49400.5}}, "bitcoin") == 49400.5

    def test_missing_coin(self, oracle):
        assert oracle._extract_price({}, "bitcoin") is None

    def test_missing_currency(self, oracle):
        assert oracle._extract_price({"bitcoin": {"eur": 1.0}}, "bitcoin") is None

    def test_non_numeric(self, oracle):
        assert oracle._extract_price({"bitcoin": {"usd": "n/a"}}, "bitcoin") is None

    def test_non_positive(self, oracle):
        assert oracle._extract_price({"bitcoin": {"usd": 0}}, "bitcoin") is None


class TestGetPrice:

    @pytest.mark.asyncio
    async def test_success(self, oracle):
        session_cm, session = mock_client_session([(200, {"bitcoin": {"usd": 49400}})])
        with patch("aiohttp.ClientSession", return_value=session_cm):
            price = await oracle.get_price("bitcoin")

        assert price == 49400.0
        _, kwargs = session.get.call_args
        assert kwargs["params"] == {"ids": "bitcoin", "vs_currencies": "usd"}

    @pytest.mark.asyncio
    async def test_unknown_coin_not_retried(self, oracle):
        session_cm, session = mock_client_session([(200, {})])
        with patch("aiohttp.ClientSession", return_value=session_cm):
            price = await oracle.get_price("not-a-coin")

        assert price is None
        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_server_errors_then_succeeds(self, oracle):
        session_cm, session = mock_client_session([
            (429, None),
            (503, None),
            (200, {"ethereum": {"usd": 2500}}),
        ])
        with patch("aiohttp.ClientSession", return_value=session_cm):
            price = await oracle.get_price("ethereum")

        assert price == 2500.0
        assert session.get.call_count == 3

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, oracle):
        session_cm, session = mock_client_session([(400, None)])
        with patch("aiohttp.ClientSession", return_value=session_cm):
            price = await oracle.get_price("bitcoin")

        assert price is None
        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, oracle):
        session_cm, session = mock_client_session([
            asyncio.TimeoutError(),
            aiohttp.ClientConnectionError("reset"),
            (500, None),
        ])
        with patch("aiohttp.ClientSession", return_value=session_cm):
            price = await oracle.get_price("bitcoin")

        assert price is None
        assert session.get.call_count == 3

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        keyed = CoinGeckoPriceOracle(retry_delays=[], api_key="CG-test")
        session_cm, session = mock_client_session([(200, {"bitcoin": {"usd": 1}})])
        with patch("aiohttp.ClientSession", return_value=session_cm):
            await keyed.get_price("bitcoin")

        _, kwargs = session.get.call_args
        assert kwargs["headers"]["x-cg-demo-api-key"] == "CG-test"


class TestFactory:

    def test_get_price_oracle_from_config(self):
        oracle = get_price_oracle()
        assert oracle.base_url == "https://api.coingecko.test/api/v3"
        assert oracle.retry_delays == [0, 0]
        assert oracle.timeout == 3.0
