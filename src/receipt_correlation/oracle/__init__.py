"""Correlation oracle: judges whether transactions describe the same purchase."""

from receipt_correlation.oracle.parsing import (
    default_verdicts,
    parse_json_response,
    parse_verdicts,
)
from receipt_correlation.oracle.prompts import PROMPT_VERSION, CorrelationPrompt
from receipt_correlation.oracle.service import (
    CorrelationOracle,
    LLMConcurrencyLimiter,
    LLMCorrelationOracle,
)

__all__ = [
    "PROMPT_VERSION",
    "CorrelationOracle",
    "CorrelationPrompt",
    "LLMConcurrencyLimiter",
    "LLMCorrelationOracle",
    "default_verdicts",
    "parse_json_response",
    "parse_verdicts",
]
