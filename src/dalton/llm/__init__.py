"""Streaming chat core: providers, normalization, assembly and retry."""

from dalton.llm.assembler import ChunkAssembler, assemble_stream
from dalton.llm.errors import (
    ClassifiedError,
    ErrorCategory,
    MalformedChunkError,
    ProviderConfigurationError,
    ProviderHTTPError,
    RequestTimeoutError,
    StreamError,
    ValidationError,
    classify_error,
)
from dalton.llm.normalizer import normalize_stream, stream_format
from dalton.llm.providers import NativeStream, Provider, create_provider
from dalton.llm.retry import RetryExecutor, RetryPolicy
from dalton.llm.scope import CallScope

__all__ = [
    "CallScope",
    "ChunkAssembler",
    "ClassifiedError",
    "ErrorCategory",
    "MalformedChunkError",
    "NativeStream",
    "Provider",
    "ProviderConfigurationError",
    "ProviderHTTPError",
    "RequestTimeoutError",
    "RetryExecutor",
    "RetryPolicy",
    "StreamError",
    "ValidationError",
    "assemble_stream",
    "classify_error",
    "create_provider",
    "normalize_stream",
    "stream_format",
]
