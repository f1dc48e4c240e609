"""
AMI Session
Transient Asterisk Manager Interface connection used for a single call
origination.

Usage:
    async with AMISession(host, port, username, secret) as session:
        response = await session.send_action({"Action": "Originate", ...}, timeout=10)

Opening the session connects, reads the banner and logs in. Leaving the
block logs off and closes the socket on every exit path, including errors
and timeouts raised inside the block.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

LINE_TERMINATOR = "\r\n"
LOGOFF_TIMEOUT = 1.0


class AMIError(Exception):
    """AMI protocol or transport error."""
    pass


class AMIAuthenticationError(AMIError):
    """Login rejected by the manager interface."""
    pass


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_action(fields: Mapping[str, Any]) -> str:
    """
    Encode an action as ``Key: Value`` lines terminated by a blank line.

    Field order is preserved; None values are omitted.
    """
    lines = [f"{key}: {format_value(value)}" for key, value in fields.items() if value is not None]
    return LINE_TERMINATOR.join(lines) + LINE_TERMINATOR + LINE_TERMINATOR


def parse_block(lines: list) -> Dict[str, str]:
    """Parse ``Key: Value`` lines into a dict (first occurrence wins)."""
    block: Dict[str, str] = {}
    for line in lines:
        key, sep, value = line.partition(":")
        if not sep:
            continue
        block.setdefault(key.strip(), value.strip())
    return block


class AMISession:
    """
    One AMI connection, never shared between calls.

    Args are endpoint first, credentials second:
        AMISession(host, port, username, secret)
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str] = None,
        secret: Optional[str] = None,
        connect_timeout: float = 5.0
    ):
        self.host = host
        self.port = int(port)
        self.username = username
        self.secret = secret
        self.connect_timeout = connect_timeout

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self.banner: Optional[str] = None
        self.logged_in = False

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    async def __aenter__(self) -> "AMISession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        """
        Open the TCP connection, read the banner and log in.

        The socket is closed again if any step fails.
        """
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout
            )

            banner = await asyncio.wait_for(self._reader.readline(), timeout=self.connect_timeout)
            if not banner:
                raise AMIError("AMI connection closed before banner")
            self.banner = banner.decode("utf-8", errors="ignore").strip()

            logger.debug(
                f"AMI connected to {self.host}:{self.port}",
                extra={"banner": self.banner}
            )

            if self.username is not None:
                response = await self.send_action(
                    {"Action": "Login", "Username": self.username, "Secret": self.secret},
                    timeout=self.connect_timeout
                )
                if response.get("Response", "").lower() != "success":
                    raise AMIAuthenticationError(
                        f"AMI login failed: {response.get('Message', 'no message')}"
                    )
                self.logged_in = True

        except BaseException:
            await self._close_transport()
            raise

    async def send_action(self, fields: Mapping[str, Any], timeout: float) -> Dict[str, str]:
        """
        Send one action and wait for its response block.

        Unsolicited event blocks are skipped. An ``ActionID`` is generated
        when the caller does not provide one.

        Raises:
            AMIError: if the session is not open or the peer hangs up
            asyncio.TimeoutError: if no response arrives in time
        """
        if self._writer is None or self._reader is None:
            raise AMIError("AMI session is not open")

        action = dict(fields)
        action_id = str(action.get("ActionID") or uuid.uuid4().hex)
        action["ActionID"] = action_id

        self._writer.write(build_action(action).encode("utf-8"))
        await self._writer.drain()

        return await asyncio.wait_for(self._read_response(action_id), timeout=timeout)

    async def _read_response(self, action_id: str) -> Dict[str, str]:
        while True:
            block = await self._read_block()
            if "Event" in block:
                continue
            if "Response" not in block:
                continue
            if block.get("ActionID", action_id) == action_id:
                return block

    async def _read_block(self) -> Dict[str, str]:
        lines = []
        while True:
            raw = await self._reader.readline()
            if not raw:
                raise AMIError("AMI connection closed by peer")
            line = raw.decode("utf-8", errors="ignore").rstrip("\r\n")
            if line == "":
                if lines:
                    return parse_block(lines)
                continue
            lines.append(line)

    async def close(self) -> None:
        """Log off (best effort) and close the socket."""
        if self._writer is None:
            return

        if self.logged_in:
            try:
                await self.send_action({"Action": "Logoff"}, timeout=LOGOFF_TIMEOUT)
            except (AMIError, OSError, asyncio.TimeoutError) as e:
                logger.debug(f"AMI logoff skipped: {e}")
            self.logged_in = False

        await self._close_transport()

    async def _close_transport(self) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"AMI socket close error: {e}")
        logger.debug(f"AMI session to {self.host}:{self.port} closed")
