"""Shared pytest fixtures: an in-memory Reolink camera behind httpx.MockTransport."""

import asyncio
import copy
import json

import httpx
import pytest

from reolink_client import OsdRepository, ReolinkTransport, SessionManager


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeCamera:
    """Speaks the api.cgi command envelope format closely enough for tests."""

    def __init__(self, name: str = "Front Door", username: str = "admin", password: str = "secret"):
        self.name = name
        self.username = username
        self.password = password
        self.lease_time = 3600
        self.name_max_len = 31
        self.osd = {
            "bgcolor": 0,
            "channel": 0,
            "osdChannel": {"enable": 0, "name": name, "pos": "Lower Left"},
            "osdTime": {"enable": 1, "pos": "Top Center"},
            "watermark": 1,
        }

        self.tokens = set()
        self.login_calls = 0
        self.logout_calls = 0
        self.login_delay = 0.0
        self.fail_login = False
        self.malformed_login = False
        self.osd_available = True
        self.gates = {}
        self.requests = []

    def sent(self, cmd: str):
        """Bodies of every command with this name, in order."""
        return [command for _, body in self.requests for command in body if command["cmd"] == cmd]

    def _authorized(self, params) -> bool:
        if params.get("token") in self.tokens:
            return True
        return params.get("username") == self.username and params.get("password") == self.password

    async def handle(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        body = json.loads(request.content)
        self.requests.append((params, body))

        responses = []
        for command in body:
            responses.append(await self._dispatch(command, params))
        return httpx.Response(200, json=responses)

    async def _dispatch(self, command, params):
        cmd = command["cmd"]
        param = command.get("param", {})

        if cmd == "Login":
            self.login_calls += 1
            if self.login_delay:
                await asyncio.sleep(self.login_delay)
            user = param["User"]
            if self.fail_login or user["userName"] != self.username or user["password"] != self.password:
                return {"cmd": cmd, "code": 1, "error": {"detail": "login failed", "rspCode": -7}}
            if self.malformed_login:
                return {"cmd": cmd, "code": 0, "value": {}}
            token = f"token-{self.login_calls}"
            self.tokens.add(token)
            return {"cmd": cmd, "code": 0, "value": {"Token": {"leaseTime": self.lease_time, "name": token}}}

        # Commands with a gate wait for it before their auth is checked
        gate = self.gates.get(cmd)
        if gate is not None:
            await gate.wait()

        if not self._authorized(params):
            return {"cmd": cmd, "code": 1, "error": {"detail": "please login first", "rspCode": -6}}

        if cmd == "Logout":
            self.logout_calls += 1
            self.tokens.discard(params.get("token"))
            return {"cmd": cmd, "code": 0, "value": {"rspCode": 200}}

        if cmd == "GetOsd":
            value = {"Osd": copy.deepcopy(self.osd)} if self.osd_available else {}
            return {
                "cmd": cmd,
                "code": 0,
                "initial": {"Osd": copy.deepcopy(self.osd)},
                "range": {"Osd": {"osdChannel": {"name": {"maxLen": self.name_max_len}}}},
                "value": value,
            }

        if cmd == "SetOsd":
            self.osd = copy.deepcopy(param["Osd"])
            return {"cmd": cmd, "code": 0, "value": {"rspCode": 200}}

        if cmd == "GetDevName":
            return {"cmd": cmd, "code": 0, "value": {"DevName": {"name": self.name}}}

        if cmd == "SetDevName":
            self.name = param["DevName"]["name"]
            return {"cmd": cmd, "code": 0, "value": {"rspCode": 200}}

        return {"cmd": cmd, "code": 1, "error": {"detail": "not supported", "rspCode": -9}}


def make_transport(handler, host: str = "192.168.1.20") -> ReolinkTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ReolinkTransport(host, client=client)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def transport(camera):
    return make_transport(camera.handle)


@pytest.fixture
def session(transport, clock):
    return SessionManager(transport, "admin", "secret", clock=clock, name="front-door")


@pytest.fixture
def osd(session):
    return OsdRepository(session, channel=0)
