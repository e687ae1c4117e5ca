"""Prompt templates for LLM-judged transaction correlation.

Prompts are versioned so stored diagnostics can be traced to the wording
that produced them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from ..schemas import Transaction

# v1.0: Batched judgment of one incoming transaction against N candidates
PROMPT_VERSION = "v1.0"


def _describe(tx: Transaction) -> str:
    """Render the fields the oracle judges on, one per line."""
    amount = "unknown" if tx.amount is None else str(tx.amount)
    timestamp = tx.occurred_at.isoformat() if tx.occurred_at else "unknown"
    items = json.dumps([item.to_dict() for item in tx.items])
    return "\n".join(
        [
            f"- Merchant: {tx.merchant or 'Unknown'}",
            f"- Amount: {tx.currency or 'INR'} {amount}",
            f"- Date: {timestamp}",
            f"- Source: {tx.primary_input_kind.value}",
            f"- Items: {items}",
            f"- Category: {tx.category or 'other'}",
        ]
    )


@dataclass
class CorrelationPrompt:
    """Prompt template for batched correlation judgment.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting LLM behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a transaction deduplication assistant.
Purchases reach the user's ledger independently from receipts, emails, SMS alerts
and voice notes. Decide whether a NEW transaction describes the same real-world
purchase as any of the EXISTING transactions.

Rules:
1. Judge every existing transaction, in the order given
2. Amounts may differ slightly (rounding, tax, tips on a separate line)
3. Merchant names may be spelled differently by different channels
4. Give a confidence from 0 to 100
5. Respond with JSON only"""

    user_template: str = """Analyze if the new transaction is correlated with any of the existing transactions (same purchase from different sources, duplicates, or related transactions):

NEW TRANSACTION:
- ID: new
{incoming}

EXISTING TRANSACTIONS TO COMPARE:
{candidates}

Return ONLY a JSON object with analysis for each existing transaction:
{{
  "correlations": [
    {{
      "transaction_index": 1,
      "is_correlated": true,
      "confidence": 0,
      "correlation_type": "duplicate|same_purchase|related|unrelated",
      "reason": "explanation of why they are/aren't correlated",
      "recommended_action": "merge|keep_separate|flag_for_review"
    }}
  ]
}}

Include exactly {count} entries, one per existing transaction.

Examples of correlations:
- Same merchant, same amount, same day from email and SMS -> duplicate (high confidence)
- Same merchant, same amount, different sources -> same purchase (high confidence)
- Similar merchant names, same amount -> likely same purchase (medium confidence)
- Different merchants, same amount, same time -> possibly related like tip + main bill (low confidence)
- Same source, same details -> duplicate from webhook firing twice (very high confidence)
- Completely different details -> unrelated (very low confidence)"""

    def format_user_message(
        self,
        incoming: Transaction,
        candidates: list[Transaction],
    ) -> str:
        """Format the user message describing the incoming transaction and candidates.

        Args:
            incoming: Transaction being correlated.
            candidates: Existing transactions, numbered from 1 in this order.

        Returns:
            Formatted user message.
        """
        blocks = [
            f"Transaction {index}:\n- ID: {candidate.id}\n{_describe(candidate)}"
            for index, candidate in enumerate(candidates, start=1)
        ]
        return self.user_template.format(
            incoming=_describe(incoming),
            candidates="\n\n".join(blocks),
            count=len(candidates),
        )
