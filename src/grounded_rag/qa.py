from __future__ import annotations

from openai import OpenAI

NO_ANSWER_TEMPLATE = (
    "The documents contain no information about: {query}.\n\n"
    "To refine the answer, please specify:\n"
    "- the product model or article number\n"
    "- the topic (installation, operation, specifications)"
)


def no_answer_message(query: str) -> str:
    return NO_ANSWER_TEMPLATE.format(query=query)


def answer_with_context(system_prompt: str, user_message: str, model: str = "gpt-4.1-mini") -> str:
    client = OpenAI()
    response = client.responses.create(model=model, instructions=system_prompt, input=user_message)
    return response.output_text
