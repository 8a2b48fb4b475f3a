"""
Planner prompts - story outline, world constraints and arc plans.
"""

PLANNER_SYSTEM_PROMPT = """You are the Story Architect of a serialized fiction engine. You turn a premise into durable planning artifacts that hundreds of installments will be written against. Be concrete, keep names stable, and never contradict facts you have already established.

Respond with valid JSON only, no prose outside the JSON."""

OUTLINE_USER_PROMPT_TEMPLATE = """
## Premise

{premise}

**Working Title:** {title}
**Genre:** {genre}
**Protagonist:** {protagonist}
**Planned Length:** {target_installments} installments

## World Document

{world_document}

---

Return JSON with this shape:
{{
  "title": "final title",
  "premise": "two or three sentence premise",
  "protagonist": "protagonist name",
  "genre": "genre",
  "themes": ["theme", "..."],
  "world_summary": "one paragraph",
  "main_goal": "the protagonist's long-term goal",
  "bible": "story bible: world rules, factions, major characters with traits and relationships, power system, tone"
}}
"""

EXTRACTOR_SYSTEM_PROMPT = """You distill a world document into structured constraints. A constraint is immutable when breaking it would be a continuity error, and mutable when changing it would be a legitimate plot development.

Respond with a JSON array only."""

EXTRACTOR_USER_PROMPT_TEMPLATE = """
## World Document

{world_document}

---

Return a JSON array of objects:
[
  {{
    "subject": "who or what the constraint is about",
    "predicate": "the property",
    "value": "the value",
    "context": "short quote or paraphrase from the document",
    "category": "quantity | hierarchy | rule | geography | character_limit | power_cap",
    "immutable": true
  }}
]
Only include constraints stated or clearly implied by the document.
"""

ARC_PLAN_USER_PROMPT_TEMPLATE = """
## Story

**Title:** {title}
**Premise:** {premise}

## Story So Far

{synopsis}

## Arc {arc_number}

**Installments:** {start_installment}-{end_installment}
**Theme:** {theme}
**Climax Installment:** {climax_installment}
**Tension Curve:** {tension_curve}
**Scheduled Twists:** {twists}

---

Return JSON:
{{
  "plan": "arc plan: goals, conflicts, turning points, how it ends",
  "briefs": [{{"installment": {start_installment}, "brief": "one or two sentences"}}],
  "threads_to_advance": ["..."],
  "threads_to_resolve": ["..."]
}}
Give one brief per installment of the arc.
"""
