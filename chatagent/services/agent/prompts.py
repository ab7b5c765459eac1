"""
Prompts for the agent pipeline.

Each model call has its own system prompt:
- PLANNER: decide whether a web search is needed and phrase the query
- DRAFTER: answer the question from history and (optional) search results
- VERIFIER: judge whether a draft is supported by the search results

The planner prompt is rendered with the configured plan / search-plan tags
so the parser and the instructions always agree.
"""

from __future__ import annotations

import re
from typing import Optional

_PLACEHOLDER_RE = re.compile(r"\{(question|search_result|answer)\}")

# =============================================================================
# PLANNING PROMPTS
# =============================================================================

PLANNER_SYSTEM_TEMPLATE = """You are the planning step of a research assistant.

Decide whether answering the user's latest question needs a fresh web search.

Write one or two sentences of reasoning after the tag {plan_tag}.
If a web search is needed, finish with the tag {search_plan_tag} followed by
a single concise search engine query on the same line.
If no search is needed, do not write {search_plan_tag} at all.

You NEVER answer the question yourself in this step."""

SEARCH_FIRST_HINT = (
    "This conversation is a search session: always provide a search query after {search_plan_tag}."
)

# =============================================================================
# DRAFTING PROMPTS
# =============================================================================

EVIDENCE_HEADER = (
    "Use the following web search results as evidence. Cite them as [source N].\n"
)

NO_EVIDENCE_NOTE = "(No search results are available for this question.)"

REPLAN_NOTE_TEMPLATE = (
    "A reviewer rejected the previous answer ({verdict}). Reviewer notes:\n{rationale}\n"
    "Address these notes and only state what the evidence supports."
)

# =============================================================================
# VERIFICATION PROMPTS
# =============================================================================

VERIFIER_SYSTEM_PROMPT = """You are a strict fact-checking reviewer.

You receive a question, web search results and a candidate answer.
Judge only whether the candidate answer is backed by the search results.

The first line of your reply MUST be exactly one of:
SUPPORTED
UNSUPPORTED
INSUFFICIENT_EVIDENCE

Then give a short rationale naming the claims that are not backed."""


def render_planner_system_prompt(plan_tag: str, search_plan_tag: str, *, search_first: bool) -> str:
    prompt = PLANNER_SYSTEM_TEMPLATE.format(plan_tag=plan_tag, search_plan_tag=search_plan_tag)
    if search_first:
        prompt = f"{prompt}\n\n{SEARCH_FIRST_HINT.format(search_plan_tag=search_plan_tag)}"
    return prompt


def render_draft_user_message(
    question: str,
    evidence_text: Optional[str],
    *,
    replan_note: Optional[str] = None,
) -> str:
    parts = []
    if evidence_text is not None:
        parts.append(EVIDENCE_HEADER + (evidence_text or NO_EVIDENCE_NOTE))
    if replan_note:
        parts.append(replan_note)
    parts.append(f"Question:\n{question}")
    return "\n\n".join(parts)


def render_replan_note(verdict: str, rationale: str) -> str:
    return REPLAN_NOTE_TEMPLATE.format(verdict=verdict, rationale=rationale.strip() or "(none given)")


def render_verifier_user_prompt(template: str, *, question: str, search_result: str, answer: str) -> str:
    """Fill the configured template in one pass so braces inside values are left alone."""
    values = {
        "question": question,
        "search_result": search_result or NO_EVIDENCE_NOTE,
        "answer": answer,
    }
    rendered = _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)
    if "{answer}" not in template:
        rendered = f"{rendered}\n\nAnswer:\n{answer}"
    return rendered
