from __future__ import annotations

DECISION_OUTPUT_DESCRIPTION = """Classify the email into exactly ONE of these outcomes:

1. ANSWERABLE: the sender asks something that the knowledge base answers
   completely. Write the reply yourself.
2. NO REPLY NEEDED: newsletters, promotions, notifications, receipts,
   automated messages, or anything that does not ask for a response.
3. MANUAL REVIEW: everything else, including questions the knowledge base
   does not answer, sensitive or ambiguous requests, and complaints.

Respond with a single JSON object and nothing else, with this shape:

{
  "isAnswerable": true or false,
  "noReplyNeeded": true or false,
  "reasoning": "one short sentence explaining the classification",
  "draft": "plain text reply body when isAnswerable is true, otherwise an empty string"
}

Rules:

- At most one of isAnswerable and noReplyNeeded may be true.
- Both are false for MANUAL REVIEW.
- Only use facts stated in the knowledge base. Never invent prices, dates,
  names, links or commitments.
- The draft must follow the writing style above and must not include a
  subject line.
- Do not wrap the JSON in markdown or add commentary.
"""
