from unittest.mock import AsyncMock

import httpx
import pytest

from modules.bom.exceptions.bom_exceptions import CommerceAPIError, CommerceCredentialsMissingError
from modules.bom.utils.retry import is_retryable_error, with_retry


class TestRetryClassification:

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404])
    def test_client_errors_are_not_retryable(self, status_code):
        assert not is_retryable_error(CommerceAPIError("rejected", status_code=status_code))

    @pytest.mark.parametrize("message", ["Product not found", "woocommerce_rest_invalid_id", "HTTP 401"])
    def test_message_markers_are_not_retryable(self, message):
        assert not is_retryable_error(CommerceAPIError(message))

    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    def test_server_errors_are_retryable(self, status_code):
        assert is_retryable_error(CommerceAPIError("unavailable", status_code=status_code))

    def test_transport_errors_are_retryable(self):
        assert is_retryable_error(httpx.ConnectError("connection refused"))

    def test_missing_credentials_are_not_retryable(self):
        assert not is_retryable_error(CommerceCredentialsMissingError("acct-1"))

    def test_unrelated_errors_are_not_retryable(self):
        assert not is_retryable_error(ValueError("bad"))


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        func = AsyncMock(side_effect=[CommerceAPIError("busy", status_code=503), {"ok": True}])

        result = await with_retry(func, 7, max_attempts=3, base_delay=0)

        assert result == {"ok": True}
        assert func.await_count == 2
        func.assert_awaited_with(7)

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=CommerceAPIError("Invalid ID.", status_code=404))

        with pytest.raises(CommerceAPIError):
            await with_retry(func, max_attempts=3, base_delay=0)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        func = AsyncMock(side_effect=CommerceAPIError("busy", status_code=503))

        with pytest.raises(CommerceAPIError):
            await with_retry(func, max_attempts=3, base_delay=0)

        assert func.await_count == 3
