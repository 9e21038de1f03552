"""HTTP client utilities for API requests."""

import httpx

from sheet_agent.utils.constants import USER_AGENT


async def post_json(
    url: str,
    payload: dict[str, object],
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
    client: httpx.AsyncClient | None = None,
) -> dict[str, object]:
    """POST a JSON body and return the decoded JSON object.

    Args:
        url: The URL to post to
        payload: JSON-serializable request body
        headers: Optional custom headers
        timeout: Request timeout in seconds
        client: Optional shared client; a short-lived one is used otherwise

    Returns:
        Response body as a dict

    Raises:
        httpx.HTTPError: On transport errors and non-2xx responses
        ValueError: If the body is not a JSON object
    """
    default_headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    if headers:
        default_headers.update(headers)

    if client is None:
        async with httpx.AsyncClient() as owned:
            response = await owned.post(url, json=payload, headers=default_headers, timeout=timeout)
    else:
        response = await client.post(url, json=payload, headers=default_headers, timeout=timeout)
    response.raise_for_status()

    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object from {url}, got {type(data).__name__}")
    return data
