"""
Reolink camera client

Async client for the Reolink JSON control API (``/cgi-bin/api.cgi``).
Handles the command envelope format, token based sessions with a single
login in flight at a time, and read-modify-write access to the OSD document.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterator, List, Optional

import httpx
import urllib3

# Suppress SSL warnings for cameras with self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

API_PATH = "/cgi-bin/api.cgi"

# Vendor rspCode meaning "please login first" (token unknown or expired)
RSP_CODE_LOGIN_REQUIRED = -6

DEFAULT_KEEPALIVE_INTERVAL = 5 * 60


# ============================================================================
# Errors
# ============================================================================


class ReolinkError(Exception):
    """Base class for every error raised by this client."""


class AuthError(ReolinkError):
    """Credentials rejected or login handshake malformed."""


class TransportError(ReolinkError):
    """Network failure, HTTP error status or undecodable response body."""


class DeviceStateError(ReolinkError):
    """Device answered but without the value we need (temporarily unavailable)."""


class ConfigError(ReolinkError):
    """Overlay configured with no usable backing source."""


class CommandError(ReolinkError):
    """A single command inside a batch was rejected by the device."""

    def __init__(self, cmd: str, rsp_code: Optional[int] = None, detail: str = ""):
        self.cmd = cmd
        self.rsp_code = rsp_code
        self.detail = detail
        super().__init__(f"{cmd} failed (rspCode={rsp_code}): {detail or 'no detail'}")


# ============================================================================
# Envelope codec
# ============================================================================


@dataclass
class CommandResponse:
    """
    One entry of the vendor's response array.

    Attributes:
        cmd: Command name echoed by the device
        code: Vendor status code (0 on success)
        value: Command result, if any
        initial: Factory defaults block (GetOsd and friends)
        range: Allowed values block (GetOsd and friends)
        error: Error object ``{"rspCode": int, "detail": str}`` on failure
    """

    cmd: str
    code: int = 0
    value: Any = None
    initial: Any = None
    range: Any = None
    error: Optional[dict] = None

    @property
    def rsp_code(self) -> Optional[int]:
        if not self.error:
            return None
        return self.error.get("rspCode")

    @property
    def ok(self) -> bool:
        return self.error is None


class CommandResults:
    """Ordered responses of one batched call, addressable by command name."""

    def __init__(self, responses: List[CommandResponse]):
        self.responses = responses

    def __iter__(self) -> Iterator[CommandResponse]:
        return iter(self.responses)

    def __len__(self) -> int:
        return len(self.responses)

    def get(self, cmd: str) -> Optional[CommandResponse]:
        for response in self.responses:
            if response.cmd == cmd:
                return response
        return None

    def errors(self) -> List[CommandResponse]:
        return [response for response in self.responses if not response.ok]

    def value_of(self, cmd: str) -> Any:
        """
        Return the value of a command, raising if that command failed.

        Args:
            cmd: Command name (e.g. "GetOsd")

        Returns:
            The command's ``value`` object (may be None)

        Raises:
            CommandError: If the command is missing or reported an error
        """
        response = self.get(cmd)
        if response is None:
            raise CommandError(cmd, detail="command missing from response")
        if not response.ok:
            raise CommandError(cmd, response.rsp_code, response.error.get("detail", ""))
        return response.value


def build_command(cmd: str, param: Optional[dict] = None, action: Optional[int] = None) -> dict:
    """Build one command object for the request array."""
    command: dict = {"cmd": cmd}
    if action is not None:
        command["action"] = action
    command["param"] = param if param is not None else {}
    return command


def decode_envelopes(payload: Any) -> CommandResults:
    """
    Decode the vendor's response array.

    Per-command errors are logged but do not abort the batch; callers pick
    the command they care about by name.

    Args:
        payload: Parsed JSON body

    Returns:
        CommandResults in response order

    Raises:
        TransportError: If the payload is not an array of command objects
    """
    if not isinstance(payload, list):
        raise TransportError(f"malformed response: expected a JSON array, got {type(payload).__name__}")

    responses = []
    for entry in payload:
        if not isinstance(entry, dict) or "cmd" not in entry:
            raise TransportError(f"malformed response entry: {entry!r}")

        response = CommandResponse(
            cmd=entry["cmd"],
            code=entry.get("code", 0),
            value=entry.get("value"),
            initial=entry.get("initial"),
            range=entry.get("range"),
            error=entry.get("error"),
        )
        if response.error is not None:
            logging.warning(
                f"Device rejected command {response.cmd}: "
                f"rspCode={response.rsp_code} detail={response.error.get('detail')}"
            )
        responses.append(response)

    return CommandResults(responses)


# ============================================================================
# AuthTransport
# ============================================================================


class ReolinkTransport:
    """
    Sends batched commands to a camera and decodes the response envelopes.

    Auth always travels as query-string parameters, never in the body.
    """

    def __init__(
        self,
        host: str,
        port: int = 80,
        https: bool = False,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize transport.

        Args:
            host: Camera IP address or hostname
            port: Camera HTTP(S) port
            https: Use https instead of http
            timeout: Request timeout in seconds
            client: Optional shared httpx client (not closed by aclose())
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        scheme = "https" if https else "http"
        self.url = f"{scheme}://{host}:{port}{API_PATH}"

        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=False,
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=4, max_keepalive_connections=2),
            )
        return self._client

    async def send(self, commands: List[dict], auth_params: Optional[dict] = None) -> CommandResults:
        """
        POST a batch of commands.

        Args:
            commands: Command objects built with build_command()
            auth_params: Query parameters carrying auth (token or username/password)

        Returns:
            Decoded CommandResults

        Raises:
            TransportError: On network failure, HTTP error status or bad body
        """
        params = {"cmd": commands[0]["cmd"]}
        if auth_params:
            params.update(auth_params)

        try:
            response = await self._get_client().post(
                self.url,
                params=params,
                json=commands,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"HTTP {e.response.status_code} from {self.host} for {params['cmd']}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__} talking to {self.host} for {params['cmd']}: {e}") from e

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise TransportError(f"malformed response from {self.host} for {params['cmd']}: {e}") from e

        return decode_envelopes(payload)

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


# ============================================================================
# SessionManager
# ============================================================================


class SessionManager:
    """
    Owns the login/logout lifecycle and token lease of one camera.

    Only one login runs at a time: concurrent callers queue on the login
    lock and reuse the token obtained by whoever got there first.
    """

    def __init__(
        self,
        transport: ReolinkTransport,
        username: str,
        password: str,
        use_token: bool = True,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        name: Optional[str] = None,
    ):
        """
        Initialize session manager.

        Args:
            transport: Transport used for every request
            username: Camera username
            password: Camera password
            use_token: Token auth if True, raw credentials on every call if False
            keepalive_interval: Seconds between forced logout/login cycles
            clock: Monotonic clock used for the token lease
            name: Camera name used in log messages
        """
        self.transport = transport
        self.username = username
        self.password = password
        self.use_token = use_token
        self.keepalive_interval = keepalive_interval
        self.name = name or transport.host
        self._clock = clock

        self.token: Optional[str] = None
        self.lease_expiry: Optional[float] = None
        self._login_lock = asyncio.Lock()
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def login_in_flight(self) -> bool:
        return self._login_lock.locked()

    def token_valid(self) -> bool:
        if self.token is None or self.lease_expiry is None:
            return False
        return self._clock() < self.lease_expiry

    def invalidate(self):
        """Forget the local token without contacting the device."""
        self.token = None
        self.lease_expiry = None

    async def ensure_valid_auth(self) -> dict:
        """
        Return query parameters authenticating the next request.

        Raises:
            AuthError: If a login was needed and failed
            TransportError: If the login request could not be sent
        """
        if not self.use_token:
            return {"username": self.username, "password": self.password}

        if self.token_valid():
            return {"token": self.token}

        async with self._login_lock:
            # Someone else may have logged in while we waited
            if not self.token_valid():
                await self._login_locked()
            return {"token": self.token}

    async def login(self):
        """Exchange credentials for a fresh token."""
        async with self._login_lock:
            await self._login_locked()

    async def _login_locked(self):
        command = build_command(
            "Login",
            {"User": {"Version": "0", "userName": self.username, "password": self.password}},
        )
        results = await self.transport.send([command])

        try:
            value = results.value_of("Login")
        except CommandError as e:
            self.invalidate()
            raise AuthError(f"Login rejected by '{self.name}': {e}") from e

        token = (value or {}).get("Token") if isinstance(value, dict) else None
        if not isinstance(token, dict) or not token.get("name"):
            self.invalidate()
            raise AuthError(f"Malformed login response from '{self.name}': {value!r}")

        try:
            lease_time = float(token.get("leaseTime"))
        except (TypeError, ValueError) as e:
            self.invalidate()
            raise AuthError(f"Malformed token lease from '{self.name}': {token!r}") from e

        self.token = token["name"]
        self.lease_expiry = self._clock() + lease_time
        logging.info(f"Logged in to '{self.name}' (lease {lease_time:.0f}s)")

    async def logout(self):
        """
        Invalidate the token on the device, best effort.

        Local token state is cleared whatever the device answers.
        """
        token = self.token
        try:
            if token is not None:
                await self.transport.send([build_command("Logout")], {"token": token})
        except ReolinkError as e:
            logging.warning(f"Logout from '{self.name}' failed: {e}")
        finally:
            self.invalidate()

    async def request(self, commands: List[dict]) -> CommandResults:
        """
        Send commands decorated with whichever auth mode is currently valid.

        Args:
            commands: Command objects built with build_command()

        Returns:
            Decoded CommandResults
        """
        auth_params = await self.ensure_valid_auth()
        results = await self.transport.send(commands, auth_params)

        if self.use_token and any(r.rsp_code == RSP_CODE_LOGIN_REQUIRED for r in results.errors()):
            # A refresh may have replaced the token while this request was in flight
            if self.token is not None and self.token == auth_params.get("token"):
                logging.warning(f"Token for '{self.name}' no longer accepted, will log in again")
                self.invalidate()
            else:
                logging.debug(f"Ignoring login-required reply to a superseded token on '{self.name}'")

        return results

    # Keepalive

    def start_keepalive(self):
        if not self.use_token or self._keepalive_task is not None:
            return
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def stop_keepalive(self):
        task = self._keepalive_task
        self._keepalive_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _keepalive_loop(self):
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self.refresh()
            except Exception as e:
                logging.error(f"Unexpected error refreshing session for '{self.name}': {e}")

    async def refresh(self):
        """Full logout/login cycle; errors are logged, never raised."""
        logging.debug(f"Refreshing session for '{self.name}'")
        await self.logout()
        try:
            await self.login()
        except ReolinkError as e:
            logging.error(f"Session refresh for '{self.name}' failed: {e}. Will retry next cycle.")

    async def close(self):
        await self.stop_keepalive()
        if self.token is not None:
            await self.logout()


# ============================================================================
# OSD document
# ============================================================================


@dataclass
class OsdDocument:
    """
    The device's OSD state for one channel.

    Attributes:
        channel: Channel number
        enable: Whether the channel-name overlay is shown
        name: Text shown by the channel-name overlay
        position: Vendor position string (e.g. "Upper Left")
        time_block: ``osdTime`` sub-document, passed through unmodified
        name_max_len: Maximum name length from the ``range`` block
        extra: Other top-level ``Osd`` keys (bgcolor, watermark, ...)
        channel_extra: Other ``osdChannel`` keys
    """

    channel: int
    enable: bool
    name: str
    position: str
    time_block: dict = field(default_factory=dict)
    name_max_len: Optional[int] = None
    extra: dict = field(default_factory=dict)
    channel_extra: dict = field(default_factory=dict)

    @classmethod
    def from_response(cls, response: CommandResponse) -> "OsdDocument":
        """
        Build a document from a GetOsd response entry.

        Raises:
            DeviceStateError: If the device returned no OSD value
        """
        osd = (response.value or {}).get("Osd") if isinstance(response.value, dict) else None
        if not osd:
            raise DeviceStateError("device returned no OSD value")

        osd_channel = dict(osd.get("osdChannel") or {})
        extra = {k: v for k, v in osd.items() if k not in ("channel", "osdChannel", "osdTime")}

        name_max_len = None
        try:
            name_max_len = int(response.range["Osd"]["osdChannel"]["name"]["maxLen"])
        except (KeyError, TypeError, ValueError):
            pass

        return cls(
            channel=osd.get("channel", 0),
            enable=bool(osd_channel.pop("enable", 0)),
            name=osd_channel.pop("name", ""),
            position=osd_channel.pop("pos", ""),
            time_block=dict(osd.get("osdTime") or {}),
            name_max_len=name_max_len,
            extra=extra,
            channel_extra=osd_channel,
        )

    def merged(
        self,
        enable: Optional[bool] = None,
        position: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "OsdDocument":
        """Copy with the given fields changed; None keeps the current value."""
        changes: dict = {}
        if enable is not None:
            changes["enable"] = enable
        if position is not None:
            changes["position"] = position
        if name is not None:
            changes["name"] = name
        return replace(self, **changes)

    def to_param(self) -> dict:
        """Full ``Osd`` sub-document for SetOsd."""
        name = self.name
        if self.name_max_len is not None and len(name) > self.name_max_len:
            logging.warning(
                f"OSD text truncated from {len(name)} to {self.name_max_len} characters"
            )
            name = name[: self.name_max_len]

        return {
            **self.extra,
            "channel": self.channel,
            "osdChannel": {
                **self.channel_extra,
                "enable": 1 if self.enable else 0,
                "name": name,
                "pos": self.position,
            },
            "osdTime": dict(self.time_block),
        }


# ============================================================================
# OsdRepository
# ============================================================================


class OsdRepository:
    """Read-modify-write access to one channel's OSD and device name."""

    def __init__(self, session: SessionManager, channel: int = 0):
        self.session = session
        self.channel = channel

    async def fetch(self) -> OsdDocument:
        results = await self.session.request(
            [build_command("GetOsd", {"channel": self.channel}, action=1)]
        )
        response = results.get("GetOsd")
        if response is None:
            raise DeviceStateError("GetOsd missing from response")
        if not response.ok:
            raise CommandError("GetOsd", response.rsp_code, response.error.get("detail", ""))
        return OsdDocument.from_response(response)

    async def write(self, doc: OsdDocument):
        results = await self.session.request(
            [build_command("SetOsd", {"Osd": doc.to_param()})]
        )
        results.value_of("SetOsd")

    async def fetch_name(self) -> str:
        results = await self.session.request(
            [build_command("GetDevName", {"channel": self.channel})]
        )
        value = results.value_of("GetDevName") or {}
        name = (value.get("DevName") or {}).get("name") if isinstance(value, dict) else None
        if not name:
            raise DeviceStateError("device reported an empty name")
        return name

    async def write_name(self, name: str):
        results = await self.session.request(
            [build_command("SetDevName", {"channel": self.channel, "DevName": {"name": name}})]
        )
        results.value_of("SetDevName")
