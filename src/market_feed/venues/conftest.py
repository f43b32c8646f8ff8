from unittest.mock import MagicMock

import pytest
import requests


def _response(payload=None, status=200, json_error=False):
    resp = MagicMock()
    resp.status_code = status
    if json_error:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def make_response():
    """Factory for MagicMock ``requests.Response`` objects."""
    return _response


@pytest.fixture
def session():
    """MagicMock session; set ``session.get.side_effect`` / ``return_value`` per test."""
    return MagicMock()
