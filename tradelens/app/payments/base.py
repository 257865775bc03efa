from typing import Any, Dict

import requests


class PaymentProviderError(RuntimeError):
    pass


def check_response(response: requests.Response, provider: str) -> Dict[str, Any]:
    """Return the JSON body of a provider response or raise with its details."""
    if not response.ok:
        raise PaymentProviderError(
            f"{provider} API error [{response.status_code}]: {response.text}"
        )
    return response.json()
