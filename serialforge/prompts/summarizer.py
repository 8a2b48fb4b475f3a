"""
Summarizer prompts - installment summaries, rolling synopsis and bible refresh.
"""

SUMMARIZER_SYSTEM_PROMPT = """You are the Archivist of a serialized story. You compress installments into faithful summaries and record every fact that later installments must respect. Never invent events.

Respond with valid JSON only."""

INSTALLMENT_SUMMARY_USER_PROMPT_TEMPLATE = """
## Installment {installment}: {title}

{content}

---

Return JSON:
{{
  "summary": "100-150 words",
  "closing_hook": "the final beat or cliffhanger in one sentence",
  "protagonist_state": "where the protagonist stands now",
  "key_events": ["..."],
  "facts": [
    {{"subject": "name", "predicate": "is_dead | location | power_level | ally_of | ...", "value": "...", "category": "character | world_rule | power | relationship | location | item | event | other"}}
  ]
}}
"""

SYNOPSIS_USER_PROMPT_TEMPLATE = """
## Previous Synopsis

{old_synopsis}

## Installments {start_installment}-{end_installment}

{summaries}

---

Write a replacement synopsis of the whole story so far in at most {max_words} words. Return JSON:
{{
  "synopsis": "...",
  "protagonist_state": "...",
  "active_allies": ["..."],
  "active_enemies": ["..."],
  "open_threads": ["..."]
}}
"""

BIBLE_REFRESH_USER_PROMPT_TEMPLATE = """
## Current Story Bible

{bible}

## Story So Far

{synopsis}

## Recent Installments

{recent}

---

Update the story bible in place: keep everything that is still true, fold in new characters, places, rules and status changes, and mark deaths. Do not rewrite it from scratch. Return JSON: {{"bible": "..."}}
"""
