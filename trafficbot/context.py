# Context assembly: retrieval sections -> one block for the system message.

SECTION_SEPARATOR = "\n\n"


def assemble(document_section: str, structured_section: str) -> str:
    """Join the non-empty sections, documents first. Both empty -> ''."""
    return SECTION_SEPARATOR.join(s for s in (document_section, structured_section) if s)


def compose_system_prompt(persona_prompt: str, context: str) -> str:
    return f"{persona_prompt.strip()}\n\nContext:\n{context}"
