"""
System prompt construction for a character.
"""

from typing import Optional

from .models import Character, Persona

PERSONALITY_HEADER = "## Character Personality"
SCENARIO_HEADER = "## Scenario"
EXAMPLE_DIALOGUE_HEADER = "## Example Dialogue Style"
PERSONA_HEADER = "## User Persona"


def build_system_prompt(
    character: Character,
    persona: Optional[Persona] = None,
    system_prompt_override: Optional[str] = None,
) -> str:
    """
    Concatenate the character's prompt sections in a fixed order.

    The override replaces the character's base prompt; personality,
    scenario, example dialogue and persona each get a labeled header and
    are skipped when empty.
    """
    parts: list[str] = []

    base = system_prompt_override or character.system_prompt
    if base and base.strip():
        parts.append(base.strip())

    if character.personality and character.personality.strip():
        parts.append(f"{PERSONALITY_HEADER}\n{character.personality.strip()}")

    if character.scenario and character.scenario.strip():
        parts.append(f"{SCENARIO_HEADER}\n{character.scenario.strip()}")

    if character.example_dialogues and character.example_dialogues.strip():
        parts.append(f"{EXAMPLE_DIALOGUE_HEADER}\n{character.example_dialogues.strip()}")

    if persona and persona.name:
        note = f"You are speaking with {persona.name}."
        if persona.description:
            note += f" {persona.description.strip()}"
        parts.append(f"{PERSONA_HEADER}\n{note}")

    return "\n\n".join(parts).strip()
