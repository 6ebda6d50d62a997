from trafficbot.context import assemble, compose_system_prompt
from trafficbot.search.prompts import build_system_prompt, load_persona


def test_both_empty():
    assert assemble("", "") == ""


def test_single_section():
    assert assemble("A", "") == "A"
    assert assemble("", "B") == "B"


def test_documents_always_first():
    assert assemble("A", "B") == "A\n\nB"
    assert assemble("B", "A") == "B\n\nA"


def test_system_prompt_carries_context():
    prompt = compose_system_prompt("You are helpful.\n", "A\n\nB")
    assert prompt == "You are helpful.\n\nContext:\nA\n\nB"


def test_system_prompt_with_empty_context():
    assert compose_system_prompt("P", "").endswith("Context:\n")


def test_default_persona_loads_from_yaml():
    persona = load_persona("etc-default")
    assert persona.key == "etc-default"
    prompt = build_system_prompt(persona.name, persona.style, persona.directives)
    assert "Established Traffic Control" in prompt
