from __future__ import annotations

import json

from google.genai import types

THINK_DIRECTIVE = "Think deeply and reason as much as possible before returning the response."
NO_THINK_DIRECTIVE = "Do NOT think or reason."


def build_instruction(
    language: str,
    description: str | None = None,
    thinking: bool = True,
    thinking_compatible: bool = False,
) -> str:
    instruction = (
        f"You are an assistant that translates subtitles from any language to {language}.\n"
        "You will receive a list of objects, each with two fields:\n\n"
        "- index: a string identifier\n"
        "- content: the subtitle text to translate\n\n"
        "Translate ONLY the 'content' field of each object.\n"
        "Keep line breaks, formatting, and special characters.\n"
        "Do NOT move or merge 'content' between objects.\n"
        "Do NOT add or remove any objects.\n"
        "Do NOT make any changes to the 'index' field.\n"
        "Return the objects in the same order, as a JSON array."
    )

    # The directive has no effect on models without reasoning support, so it is not sent at all.
    if thinking_compatible:
        instruction += "\n" + (THINK_DIRECTIVE if thinking else NO_THINK_DIRECTIVE)

    if description:
        instruction += f"\n\nAdditional user instruction:\n\n{description}"

    return instruction


def build_request(batch: list[dict[str, str]]) -> str:
    return json.dumps(
        [{"index": item["index"], "content": item["content"]} for item in batch],
        ensure_ascii=False,
    )


def response_schema() -> types.Schema:
    return types.Schema(
        type=types.Type.ARRAY,
        items=types.Schema(
            type=types.Type.OBJECT,
            properties={
                "index": types.Schema(type=types.Type.STRING),
                "content": types.Schema(type=types.Type.STRING),
            },
            required=["index", "content"],
        ),
    )


def safety_settings() -> list[types.SafetySetting]:
    categories = (
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    )
    return [types.SafetySetting(category=c, threshold=types.HarmBlockThreshold.BLOCK_NONE) for c in categories]
