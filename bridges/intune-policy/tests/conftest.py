import pytest

from graph_client import FetchError


class FakeGraphClient:
    """Serves canned JSON keyed by endpoint; `failures` maps endpoint -> HTTP status."""

    def __init__(self, responses=None, failures=None):
        self.responses = dict(responses or {})
        self.failures = dict(failures or {})
        self.calls = []

    def get_json(self, endpoint, params=None):
        self.calls.append(endpoint)
        if endpoint in self.failures:
            raise FetchError(endpoint, self.failures[endpoint], '{"error": {"code": "Forbidden"}}')
        if endpoint not in self.responses:
            raise FetchError(endpoint, 404, '{"error": {"code": "ResourceNotFound"}}')
        return self.responses[endpoint]

    def get_value(self, endpoint, params=None):
        return self.get_json(endpoint, params=params).get("value", [])


def _group(group_id, name, description=None):
    return {"id": group_id, "displayName": name, "description": description}


@pytest.fixture
def fake_client():
    return FakeGraphClient


@pytest.fixture
def directory():
    return {
        "groups/G1": _group("G1", "Intune - Corporate Laptops", "All corporate Windows laptops"),
        "groups/G2": _group("G2", "Intune - Pilot Ring"),
        "groups/G3": _group("G3", "Intune - Kiosks", "Shared kiosk devices"),
    }
