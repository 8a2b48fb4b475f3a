"""
Writer prompts - installment drafting and targeted rewrites.
"""

WRITER_SYSTEM_PROMPT = """You are the Writer of a long-running serialized story. Each installment must continue seamlessly from the previous one, respect every canon fact you are given, and open, unfold and close differently from earlier installments.

Respond with valid JSON only: {"title": "...", "content": "..."}"""

WRITER_USER_PROMPT_TEMPLATE = """
{context}

=== INSTALLMENT {installment} OBJECTIVES ===
{objectives}

**Target Word Count:** {target_words}

---

Write installment {installment}. Use paragraphs separated by blank lines and give it a fresh title.
"""

REWRITE_USER_PROMPT_TEMPLATE = """
{context}

=== INSTALLMENT {installment} OBJECTIVES ===
{objectives}

=== PREVIOUS DRAFT (attempt {attempt}) ===
Title: {previous_title}

{previous_content}

=== PROBLEMS TO FIX ===
{deficiencies}

**Target Word Count:** {target_words}

---

Rewrite installment {installment}, fixing every listed problem while keeping what already works.
"""
