import httpx

from simctl.config import Config


class ApiError(Exception):
    """Error response from the orchestrator API."""

    def __init__(self, status_code: int, error: str, message: str):
        super().__init__(f"{error}: {message}")
        self.status_code = status_code
        self.error = error
        self.message = message


def get_config() -> Config:
    return Config()


def get_api_client() -> httpx.AsyncClient:
    config = get_config()
    return httpx.AsyncClient(base_url=config.api_url, timeout=config.timeout)


def raise_for_error(response: httpx.Response) -> None:
    """Raise ApiError carrying the API's {"error", "message"} detail."""
    if not response.is_error:
        return
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    if isinstance(detail, dict):
        raise ApiError(response.status_code, detail.get("error", "Error"), detail.get("message", ""))
    raise ApiError(response.status_code, f"HTTP {response.status_code}", str(detail or response.text))
