import warnings
from typing import Any

import litellm
from litellm import completion as litellm_completion

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True


def completion(
    model: str,
    messages: list[dict],
    temperature: float | None = None,
    max_tokens: int | None = None,
    **kwargs,
) -> Any:
    params: dict[str, Any] = {"model": model, "messages": messages, **kwargs}
    # None means "use the backend default", so the key is left out entirely.
    if temperature is not None:
        params["temperature"] = temperature
    if max_tokens:
        params["max_tokens"] = max_tokens
    return litellm_completion(**params)


def reply_text(
    model: str,
    messages: list[dict],
    temperature: float | None = None,
    max_tokens: int | None = None,
    **kwargs,
) -> str:
    response = completion(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
        **kwargs,
    )
    choice = response.choices[0]
    return getattr(choice.message, "content", None) or ""
