import httpx

from botforge.cli.config import Config


def get_config() -> Config:
    return Config()


def get_api_client() -> httpx.AsyncClient:
    config = get_config()
    headers = {"X-User-ID": config.user_id} if config.user_id else {}
    return httpx.AsyncClient(base_url=config.api_url, headers=headers, timeout=30.0)


def error_message(response: httpx.Response) -> str:
    """Best human-readable error from an API error response."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)
