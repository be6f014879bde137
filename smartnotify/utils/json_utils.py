"""
JSON utilities for cleaning and parsing LLM responses.
"""

import json
from typing import Any, Dict


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers and surrounding prose.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    response = response.strip()

    # Models sometimes wrap the object in a sentence
    if not response.startswith('{'):
        first = response.find('{')
        last = response.rfind('}')
        if first != -1 and last > first:
            response = response[first:last + 1]

    return response


def parse_json_object(response: str) -> Dict[str, Any]:
    """Parse an LLM response that must contain a single JSON object.

    Args:
        response: Raw LLM response

    Returns:
        Parsed dictionary

    Raises:
        ValueError: If the response is not a JSON object
    """
    try:
        parsed = json.loads(clean_json_response(response))
    except json.JSONDecodeError as e:
        raise ValueError(f'Response is not valid JSON: {e}') from e

    if not isinstance(parsed, dict):
        raise ValueError(f'Expected a JSON object, got {type(parsed).__name__}')
    return parsed
