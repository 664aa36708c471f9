GROUNDING_FACTS_PROMPT = """## Grounding facts
The following facts were retrieved for this request. Prefer them over general knowledge.

{facts}

## Rules for using the facts
1. Only cite prices, durations or place details that appear above or in the conversation.
2. If the facts do not cover something the user asked, say so and give general guidance.
3. Never invent hotel, restaurant or tour operator names; hedge when unsure.
"""

NO_GROUNDING_FACTS = "(No facts were retrieved for this request. Answer from general guidance and hedge specifics.)"


def format_grounding_facts(facts) -> str:
    """Render grounding facts as a bulleted block appended to the system instructions."""
    lines = [f"- {fact}" for fact in facts if fact and str(fact).strip()]
    if not lines:
        return NO_GROUNDING_FACTS
    return GROUNDING_FACTS_PROMPT.format(facts="\n".join(lines))
