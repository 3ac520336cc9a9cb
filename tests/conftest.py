import json

import pytest


class FakeResponse:
    def __init__(self, body, status_code=200, read_error=None):
        self._body = body
        self.status_code = status_code
        self.read_error = read_error
        self.closed = False

    @property
    def content(self):
        if self.read_error is not None:
            raise self.read_error
        return self._body

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def raw_departure():
    def build(line_id=1, designation="1", destination="Downtown", direction="North",
              scheduled="2024-01-15T08:00:00", expected="2024-01-15T08:00:00"):
        return {
            "destination": destination,
            "direction": direction,
            "scheduled": scheduled,
            "expected": expected,
            "line": {"id": line_id, "designation": designation},
        }
    return build


@pytest.fixture
def upstream():
    def build(payload=None, *, body=None, status_code=200, error=None, read_error=None):
        if body is None:
            body = json.dumps(payload if payload is not None else {"departures": []}).encode()
        response = FakeResponse(body, status_code=status_code, read_error=read_error)
        return FakeSession(response=response, error=error)
    return build
