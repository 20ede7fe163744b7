"""
LLM Error Handler - error classification for OpenAI calls made by the
learning assistant and the chatbot.

Usage:
    from tekbreed.utils.llm_error_handler import handle_llm_error, LLMServiceException

    try:
        response = client.chat.completions.create(...)
    except Exception as e:
        raise LLMServiceException(handle_llm_error(e, context="rag answer"))
"""

import re
from enum import Enum
from typing import Optional, Dict, Any
from dataclasses import dataclass

import openai


class LLMErrorType(str, Enum):
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    SERVER_ERROR = "server_error"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    CONTEXT_LENGTH = "context_length"
    UNKNOWN = "unknown"


@dataclass
class LLMError:
    """Structured LLM error for API responses."""
    error_type: LLMErrorType
    title: str
    message: str
    user_message: str
    status_code: int
    retry_after: Optional[int] = None
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "error_type": self.error_type.value,
            "title": self.title,
            "message": self.message,
            "user_message": self.user_message,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
            "is_llm_error": True
        }


ERROR_MESSAGES = {
    LLMErrorType.RATE_LIMIT: {
        "title": "Too Many Requests",
        "message": "The learning assistant is receiving too many requests right now.",
        "user_message": "We're experiencing high traffic. Please wait a moment and try again, or contact support if this persists."
    },
    LLMErrorType.QUOTA_EXCEEDED: {
        "title": "Assistant Quota Exceeded",
        "message": "The AI provider billing quota has been reached.",
        "user_message": "The learning assistant is temporarily unavailable. Please try again later."
    },
    LLMErrorType.TIMEOUT: {
        "title": "Request Timed Out",
        "message": "The AI provider did not respond in time.",
        "user_message": "Request timed out, please try again"
    },
    LLMErrorType.SERVICE_UNAVAILABLE: {
        "title": "Assistant Unavailable",
        "message": "Could not reach the AI provider.",
        "user_message": "Network error, please check your connection"
    },
    LLMErrorType.SERVER_ERROR: {
        "title": "Assistant Error",
        "message": "The AI provider returned a server error.",
        "user_message": "Internal server error"
    },
    LLMErrorType.AUTHENTICATION: {
        "title": "Assistant Authentication Error",
        "message": "The AI provider rejected our credentials.",
        "user_message": "The learning assistant is misconfigured. Please contact support."
    },
    LLMErrorType.INVALID_REQUEST: {
        "title": "Invalid Request",
        "message": "The request to the AI provider was invalid.",
        "user_message": "There was an issue processing your question. Please try rephrasing it."
    },
    LLMErrorType.CONTEXT_LENGTH: {
        "title": "Question Too Long",
        "message": "The prompt exceeded the model's context window.",
        "user_message": "Your question and its context are too long. Please shorten your question."
    },
    LLMErrorType.UNKNOWN: {
        "title": "Assistant Error",
        "message": "An unexpected error occurred with the AI provider.",
        "user_message": "Internal server error"
    }
}

STATUS_CODES = {
    LLMErrorType.RATE_LIMIT: 429,
    LLMErrorType.QUOTA_EXCEEDED: 402,
    LLMErrorType.TIMEOUT: 504,
    LLMErrorType.SERVICE_UNAVAILABLE: 503,
    LLMErrorType.SERVER_ERROR: 502,
    LLMErrorType.AUTHENTICATION: 401,
    LLMErrorType.INVALID_REQUEST: 400,
    LLMErrorType.CONTEXT_LENGTH: 400,
    LLMErrorType.UNKNOWN: 500,
}


def _classify(exception: Exception) -> LLMErrorType:
    error_str = str(exception).lower()
    type_name = type(exception).__name__.lower()

    # Quota errors arrive as 429s too, so check them first
    if "insufficient_quota" in error_str or "exceeded your current quota" in error_str or "billing" in error_str:
        return LLMErrorType.QUOTA_EXCEEDED
    if isinstance(exception, openai.RateLimitError) or "rate limit" in error_str or "rate_limit" in error_str:
        return LLMErrorType.RATE_LIMIT
    if getattr(exception, "status_code", None) == 429 or " 429" in error_str:
        return LLMErrorType.RATE_LIMIT
    # APITimeoutError subclasses APIConnectionError
    if isinstance(exception, (openai.APITimeoutError, TimeoutError)) or "timed out" in error_str or "timeout" in type_name:
        return LLMErrorType.TIMEOUT
    if isinstance(exception, (openai.APIConnectionError, ConnectionError)) or "network" in error_str or "connection" in type_name:
        return LLMErrorType.SERVICE_UNAVAILABLE
    if isinstance(exception, openai.InternalServerError) or "service unavailable" in error_str or "bad gateway" in error_str:
        return LLMErrorType.SERVER_ERROR
    if isinstance(exception, openai.AuthenticationError) or "invalid api key" in error_str or "unauthorized" in error_str:
        return LLMErrorType.AUTHENTICATION
    if "context_length" in error_str or "maximum context length" in error_str:
        return LLMErrorType.CONTEXT_LENGTH
    if isinstance(exception, openai.BadRequestError) or "invalid_request" in error_str:
        return LLMErrorType.INVALID_REQUEST
    return LLMErrorType.UNKNOWN


def handle_llm_error(exception: Exception, context: str = None) -> LLMError:
    """Classify an exception raised by an OpenAI call."""
    error_type = _classify(exception)
    messages = ERROR_MESSAGES[error_type]

    details = f"{type(exception).__name__}: {exception}"
    if context:
        details = f"{context} - {details}"
    print(f"🔴 [LLM] {details}")

    return LLMError(
        error_type=error_type,
        title=messages["title"],
        message=messages["message"],
        user_message=messages["user_message"],
        status_code=STATUS_CODES[error_type],
        retry_after=_extract_retry_after(exception) if error_type == LLMErrorType.RATE_LIMIT else None,
        details=details
    )


def _extract_retry_after(exception: Exception) -> Optional[int]:
    """Retry-after seconds from the provider message, default 30."""
    error_str = str(exception).lower()
    for pattern in (r'try again in (\d+)\s*(?:s|sec|second)', r'retry after (\d+)\s*(?:s|sec|second)'):
        match = re.search(pattern, error_str)
        if match:
            return int(match.group(1))
    return 30


class LLMServiceException(Exception):
    """Exception wrapper for LLM errors with structured data."""
    def __init__(self, llm_error: LLMError):
        self.llm_error = llm_error
        super().__init__(llm_error.user_message)

    def to_dict(self) -> Dict[str, Any]:
        return self.llm_error.to_dict()

    @property
    def status_code(self) -> int:
        return self.llm_error.status_code

    @property
    def user_message(self) -> str:
        return self.llm_error.user_message
