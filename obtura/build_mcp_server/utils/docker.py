"""
Docker utility functions.
"""

import inspect
import logging
import os
import socket
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import docker
import requests
from docker.errors import APIError, DockerException
from pydantic import BaseModel, ConfigDict

from obtura.build_mcp_server.utils.errors import (
    BuildCancelled,
    EngineBuildFailed,
    EnginePushFailed,
    EngineUnavailable,
)
from obtura.build_mcp_server.utils.framework_detection import is_skipped_directory

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60
DEFAULT_PLATFORM = "linux/amd64"


class CancellationToken:
    """
    Cancel flag plus an optional monotonic deadline.

    Tokens derived with narrowed() share the flag and the cancel callbacks, so
    cancelling any of them cancels all.
    """

    def __init__(self, deadline: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.deadline = deadline
        self._clock = clock
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        """Sets the flag and runs the registered callbacks on the calling thread."""
        with self._lock:
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks[:] = []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Registers a callback that cancel() runs, for aborting blocking calls.

        A token that is already cancelled runs the callback immediately.

        Returns:
            Function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._discard(callback)
        callback()
        return lambda: None

    def _discard(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def narrowed(self, seconds: float) -> "CancellationToken":
        """Returns a token whose deadline is at most seconds from now."""
        deadline = self._clock() + seconds
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        token = CancellationToken(deadline=deadline, clock=self._clock)
        token._event = self._event
        token._lock = self._lock
        token._callbacks = self._callbacks
        return token

    def check(self, what: str) -> None:
        if self.cancelled:
            raise BuildCancelled(f"{what} cancelled")


class RegistryCredentials(BaseModel):
    """Registry the images are pushed to and how to log in to it."""

    model_config = ConfigDict(frozen=True)

    registry_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RegistryCredentials":
        return cls(
            registry_url=config.get("registry_url"),
            username=config.get("registry_username"),
            password=config.get("registry_password"),
        )

    @property
    def registry_host(self) -> Optional[str]:
        if not self.registry_url:
            return None
        host = self.registry_url.split("://", 1)[-1]
        return host.rstrip("/")

    def qualify(self, image_reference: str) -> str:
        """Prefixes an image reference with the registry host, if one is configured."""
        host = self.registry_host
        if host is None or image_reference.startswith(f"{host}/"):
            return image_reference
        return f"{host}/{image_reference}"

    def auth_config(self) -> Optional[Dict[str, str]]:
        if not self.username or not self.password:
            return None
        auth = {"username": self.username, "password": self.password}
        if self.registry_url:
            auth["serveraddress"] = self.registry_url
        return auth


class EngineClient:
    """Lazily created, shared handle to the container engine."""

    def __init__(self, base_url: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT):
        self._base_url = base_url
        self._timeout = timeout
        self._lock = threading.Lock()
        self._client: Optional[docker.DockerClient] = None

    def _create(self) -> docker.DockerClient:
        if self._base_url:
            return docker.DockerClient(base_url=self._base_url, timeout=self._timeout)
        return docker.from_env(timeout=self._timeout)

    def get(self) -> docker.DockerClient:
        """
        Returns the engine client, creating it on first use.

        Raises:
            EngineUnavailable: If the client cannot be created
        """
        with self._lock:
            if self._client is None:
                try:
                    self._client = self._create()
                except DockerException as e:
                    raise EngineUnavailable(f"Cannot connect to container engine: {e}") from e
                logger.info("Connected to container engine")
            return self._client

    def connect(self) -> bool:
        """Tries to reach the engine eagerly; failures are logged and retried on first use."""
        try:
            self.get().ping()
        except (EngineUnavailable, DockerException, requests.exceptions.RequestException) as e:
            logger.warning(f"Container engine not reachable at startup: {e}")
            self.reset()
            return False
        return True

    def reset(self) -> None:
        """Drops the current client so the next get() reconnects."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()
            logger.info("Dropped container engine connection")


def split_reference(image_reference: str):
    """Splits an image reference into repository and tag."""
    slash = image_reference.rfind("/")
    colon = image_reference.rfind(":")
    if colon > slash:
        return image_reference[:colon], image_reference[colon + 1:]
    return image_reference, "latest"


def event_error(event: Dict[str, Any]) -> Optional[str]:
    if "error" in event:
        return str(event["error"])
    if "errorDetail" in event:
        detail = event["errorDetail"]
        return str(detail.get("message", detail)) if isinstance(detail, dict) else str(detail)
    return None


def _response_socket(response: Any) -> Optional[Any]:
    # Same path the docker SDK takes to reach the socket of an attached response
    fp = getattr(getattr(response.raw, "_fp", None), "fp", None)
    raw = getattr(fp, "raw", None)
    sock = getattr(raw, "_sock", raw)
    return sock if hasattr(sock, "shutdown") else None


class EngineStream:
    """
    Handle for aborting a live engine event stream from another thread.

    The docker SDK returns generators reading a streamed HTTP response. Such a
    generator cannot be closed while another thread is inside it, so abort()
    shuts the response's connection down instead. The blocked read then
    returns and the engine stops the build or push when the client goes away.
    """

    def __init__(self, stream: Iterator[Dict[str, Any]]):
        self._stream = stream
        self._lock = threading.Lock()
        self._closed = False
        self._response = None
        if inspect.isgenerator(stream) and stream.gi_frame is not None:
            self._response = stream.gi_frame.f_locals.get("response")

    def abort(self) -> None:
        if self._response is None:
            if not inspect.isgenerator(self._stream):
                self.close()
            return
        sock = _response_socket(self._response)
        try:
            if sock is not None:
                sock.shutdown(socket.SHUT_RDWR)
            self._response.close()
        except OSError as e:
            logger.debug(f"Engine connection already closed: {e}")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()


class ImageBuilder:
    """Builds and pushes images through the container engine."""

    def __init__(
        self,
        engine: EngineClient,
        credentials: RegistryCredentials,
        platform: str = DEFAULT_PLATFORM,
        dockerfile: str = "Dockerfile",
    ):
        self._engine = engine
        self.credentials = credentials
        self._auth_config = credentials.auth_config()
        self.platform = platform
        self.dockerfile = dockerfile

    def _with_reconnect(self, operation: Callable[[docker.DockerClient], Any], what: str) -> Any:
        last_error: Optional[Exception] = None
        for attempt in (1, 2):
            try:
                return operation(self._engine.get())
            except (EngineUnavailable, requests.exceptions.ConnectionError) as e:
                last_error = e
                logger.warning(f"Container engine connection failed during {what} (attempt {attempt}): {e}")
                self._engine.reset()
        raise EngineUnavailable(f"Container engine unavailable during {what}: {last_error}") from last_error

    def _follow(
        self,
        stream: Iterator[Dict[str, Any]],
        token: "CancellationToken",
        what: str,
        failure: type,
    ) -> Iterator[Dict[str, Any]]:
        engine_stream = EngineStream(stream)
        unregister = token.on_cancel(engine_stream.abort)
        try:
            for event in stream:
                token.check(what)
                yield event
                message = event_error(event)
                if message is not None:
                    raise failure(f"{what} failed: {message}")
            # an aborted stream ends like a finished one
            token.check(what)
        except OSError as e:
            # requests exceptions are OSErrors too
            if token.cancelled:
                raise BuildCancelled(f"{what} cancelled") from e
            raise EngineUnavailable(f"Lost connection to container engine during {what}: {e}") from e
        except ValueError as e:
            # read from a response that abort() already closed
            if not token.cancelled:
                raise
            raise BuildCancelled(f"{what} cancelled") from e
        finally:
            unregister()
            engine_stream.close()

    def build(
        self, app_path: str, image_tag: str, cancel_token: Optional[CancellationToken] = None
    ) -> Iterator[Dict[str, Any]]:
        """
        Starts building an image and returns the engine's event stream.

        The stream is live: events arrive as the engine produces them. An
        error event is yielded and then raises EngineBuildFailed.

        Args:
            app_path: Build context directory holding the Dockerfile
            image_tag: Reference to tag the image with
            cancel_token: Cancel flag and deadline; the deadline also bounds
                the engine socket timeout

        Returns:
            Iterator of decoded build events

        Raises:
            EngineUnavailable: If the engine cannot be reached after one reconnect
            EngineBuildFailed: If the engine refuses the build
            BuildCancelled: If the token is already cancelled
        """
        token = cancel_token or CancellationToken()
        what = f"Build of {image_tag}"
        token.check(what)

        remaining = token.remaining()
        timeout = max(1, int(remaining)) if remaining is not None else None
        logger.info(f"Building {image_tag} from {app_path} for {self.platform}")

        def start(client: docker.DockerClient):
            return client.api.build(
                path=app_path,
                dockerfile=self.dockerfile,
                tag=image_tag,
                platform=self.platform,
                rm=True,
                forcerm=True,
                decode=True,
                timeout=timeout,
            )

        try:
            stream = self._with_reconnect(start, "build")
        except APIError as e:
            raise EngineBuildFailed(f"{what} was refused: {e.explanation or e}") from e
        return self._follow(stream, token, what, EngineBuildFailed)

    def push(
        self, image_tag: str, cancel_token: Optional[CancellationToken] = None
    ) -> Iterator[Dict[str, Any]]:
        """
        Starts pushing an image and returns the registry progress stream.

        Raises:
            EngineUnavailable: If the engine cannot be reached after one reconnect
            EnginePushFailed: If the registry refuses the push
        """
        token = cancel_token or CancellationToken()
        what = f"Push of {image_tag}"
        token.check(what)

        repository, tag = split_reference(image_tag)
        logger.info(f"Pushing {repository}:{tag}")

        def start(client: docker.DockerClient):
            return client.api.push(
                repository, tag=tag, stream=True, decode=True, auth_config=self._auth_config
            )

        try:
            stream = self._with_reconnect(start, "push")
        except APIError as e:
            raise EnginePushFailed(f"{what} was refused: {e.explanation or e}") from e
        return self._follow(stream, token, what, EnginePushFailed)


def measure_build_context(app_path: str) -> int:
    """
    Sums the size of the files sent to the engine as build context.

    Directories the detector skips are left out.

    Args:
        app_path: Build context directory

    Returns:
        Total size in bytes
    """
    total = 0
    for root, dirs, files in os.walk(app_path):
        dirs[:] = [d for d in dirs if not is_skipped_directory(d)]
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except FileNotFoundError:
                logger.debug(f"{name} disappeared while measuring {root}")
    return total
