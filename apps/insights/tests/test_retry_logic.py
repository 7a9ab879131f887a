"""Tests for retry utilities and LLM client retry logic with exponential backoff."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from openai import APIConnectionError, APIStatusError, APITimeoutError

from services.llm import RETRYABLE_STATUS_CODES, LLMClient, strip_thinking_tags
from utils.retry import calculate_backoff, retry_call


def make_api_error(status_code):
    mock_response = MagicMock()
    mock_response.status_code = status_code
    return APIStatusError(
        message=f"Error {status_code}",
        response=mock_response,
        body=None,
    )


@pytest.fixture
def mock_settings():
    with patch("services.llm.get_settings") as settings:
        settings.return_value = MagicMock(
            llm_model="test-model",
            llm_base_url="http://llm.test/v1",
            llm_temperature=0.3,
            llm_max_tokens=512,
            llm_max_retries=3,
            llm_retry_base_delay=1.0,
        )
        settings.return_value.get_llm_api_key = MagicMock(return_value="test")
        yield settings


@pytest.fixture
def mock_openai_response():
    """Create a mock OpenAI response."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = "Test response"
    response.usage = None
    return response


class TestCalculateBackoff:
    def test_exponential_without_jitter(self):
        assert calculate_backoff(0, base=1.0, jitter=False) == 1.0
        assert calculate_backoff(1, base=1.0, jitter=False) == 2.0
        assert calculate_backoff(2, base=1.0, jitter=False) == 4.0

    def test_capped(self):
        assert calculate_backoff(10, base=1.0, max_delay=8.0, jitter=False) == 8.0

    def test_jitter_bounds(self):
        for _ in range(20):
            delay = calculate_backoff(1, base=1.0, jitter=True)
            assert 2.0 <= delay <= 3.0


class TestRetryCall:
    """Test retry_call()."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        func = AsyncMock(return_value="ok")
        assert await retry_call(func) == "ok"
        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        func = AsyncMock(side_effect=[ConnectionError("down"), "ok"])
        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await retry_call(func, max_attempts=3) == "ok"
        assert func.call_count == 2
        assert mock_sleep.call_count == 1

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        func = AsyncMock(side_effect=ConnectionError("down"))
        with patch("asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ConnectionError):
                await retry_call(func, max_attempts=3)
        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad input"))
        with pytest.raises(ValueError):
            await retry_call(func, max_attempts=3, retryable_exceptions={ConnectionError})
        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_if_overrides_exception_types(self):
        func = AsyncMock(side_effect=[ValueError("flaky"), "ok"])
        with patch("asyncio.sleep", new_callable=AsyncMock):
            result = await retry_call(
                func,
                retryable_exceptions={ConnectionError},
                retry_if=lambda e: "flaky" in str(e),
            )
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_sleeps_with_exponential_backoff(self):
        func = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await retry_call(func, backoff_base=0.5, jitter=False)
        assert [call.args[0] for call in mock_sleep.call_args_list] == [0.5, 1.0]


class TestLLMRetryLogic:
    """Test the retry logic in LLMClient."""

    def test_retryable_status_codes(self):
        """Should have correct retryable status codes."""
        assert 429 in RETRYABLE_STATUS_CODES  # Rate limit
        assert 500 in RETRYABLE_STATUS_CODES  # Internal server error
        assert 502 in RETRYABLE_STATUS_CODES  # Bad gateway
        assert 503 in RETRYABLE_STATUS_CODES  # Service unavailable
        assert 504 in RETRYABLE_STATUS_CODES  # Gateway timeout
        assert 400 not in RETRYABLE_STATUS_CODES  # Bad request
        assert 401 not in RETRYABLE_STATUS_CODES  # Unauthorized
        assert 404 not in RETRYABLE_STATUS_CODES  # Not found

    def test_is_retryable_error_connection_errors(self, mock_settings):
        """Should identify connection errors as retryable."""
        with patch("services.llm.AsyncOpenAI"):
            client = LLMClient()

            assert client._is_retryable_error(TimeoutError())
            assert client._is_retryable_error(ConnectionError())
            assert client._is_retryable_error(APIConnectionError(request=MagicMock()))
            assert client._is_retryable_error(APITimeoutError(request=MagicMock()))
            assert not client._is_retryable_error(ValueError("bad"))

    def test_is_retryable_error_status_codes(self, mock_settings):
        """Should identify retryable HTTP status codes."""
        with patch("services.llm.AsyncOpenAI"):
            client = LLMClient()

            assert client._is_retryable_error(make_api_error(429))
            assert client._is_retryable_error(make_api_error(500))
            assert client._is_retryable_error(make_api_error(503))

            assert not client._is_retryable_error(make_api_error(400))
            assert not client._is_retryable_error(make_api_error(401))
            assert not client._is_retryable_error(make_api_error(404))

    @pytest.mark.asyncio
    async def test_generate_success_no_retry(self, mock_settings, mock_openai_response):
        """Should return response on first success."""
        with patch("services.llm.AsyncOpenAI") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.chat.completions.create = AsyncMock(return_value=mock_openai_response)
            mock_client_class.return_value = mock_client

            client = LLMClient()
            result = await client.generate("Test prompt", system_prompt="Be brief")

            assert result == "Test response"
            assert mock_client.chat.completions.create.call_count == 1
            kwargs = mock_client.chat.completions.create.call_args.kwargs
            assert kwargs["model"] == "test-model"
            assert kwargs["temperature"] == 0.3
            assert kwargs["max_tokens"] == 512
            assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}

    @pytest.mark.asyncio
    async def test_generate_retry_on_transient_error(self, mock_settings, mock_openai_response):
        """Should retry on transient errors."""
        with patch("services.llm.AsyncOpenAI") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.chat.completions.create = AsyncMock(
                side_effect=[ConnectionError("Connection failed"), mock_openai_response]
            )
            mock_client_class.return_value = mock_client

            with patch("asyncio.sleep", new_callable=AsyncMock):
                client = LLMClient()
                result = await client.generate("Test prompt", max_retries=3)

            assert result == "Test response"
            assert mock_client.chat.completions.create.call_count == 2

    @pytest.mark.asyncio
    async def test_generate_max_retries_exceeded(self, mock_settings):
        """Should raise after max retries exceeded."""
        with patch("services.llm.AsyncOpenAI") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.chat.completions.create = AsyncMock(
                side_effect=ConnectionError("Connection failed")
            )
            mock_client_class.return_value = mock_client

            with patch("asyncio.sleep", new_callable=AsyncMock):
                client = LLMClient()
                with pytest.raises(ConnectionError):
                    await client.generate("Test prompt", max_retries=2)

            # 1 initial + 2 retries
            assert mock_client.chat.completions.create.call_count == 3

    @pytest.mark.asyncio
    async def test_generate_no_retry_on_non_retryable_error(self, mock_settings):
        """Should not retry on non-retryable errors."""
        with patch("services.llm.AsyncOpenAI") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.chat.completions.create = AsyncMock(side_effect=make_api_error(400))
            mock_client_class.return_value = mock_client

            client = LLMClient()
            with pytest.raises(APIStatusError):
                await client.generate("Test prompt")

            assert mock_client.chat.completions.create.call_count == 1

    @pytest.mark.asyncio
    async def test_generate_strips_thinking_tags(self, mock_settings, mock_openai_response):
        mock_openai_response.choices[0].message.content = "<think>hmm</think>\n{\"goals\": []}"
        with patch("services.llm.AsyncOpenAI") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.chat.completions.create = AsyncMock(return_value=mock_openai_response)
            mock_client_class.return_value = mock_client

            client = LLMClient()
            assert await client.generate("Test prompt") == '{"goals": []}'


class TestStripThinkingTags:
    def test_closed_tags(self):
        assert strip_thinking_tags("<think>plan</think>Answer") == "Answer"
        assert strip_thinking_tags("<thinking mode='x'>plan</thinking> Answer") == "Answer"

    def test_unclosed_tag_removes_rest(self):
        assert strip_thinking_tags("Answer\n<think>still going\nmore") == "Answer"

    def test_empty(self):
        assert strip_thinking_tags("") == ""
