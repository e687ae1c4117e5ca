"""Candidate search for transaction correlation."""

from receipt_correlation.matching.candidates import CandidateFinder

__all__ = ["CandidateFinder"]
