"""
Unit tests for Docker utility functions.
"""

import os
import socket
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

import requests
from docker.errors import APIError, DockerException

from obtura.build_mcp_server.utils.docker import (
    CancellationToken,
    EngineClient,
    ImageBuilder,
    RegistryCredentials,
    event_error,
    measure_build_context,
    split_reference,
)
from obtura.build_mcp_server.utils.errors import (
    BuildCancelled,
    EngineBuildFailed,
    EnginePushFailed,
    EngineUnavailable,
)


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestCancellationToken(unittest.TestCase):
    """Tests for CancellationToken."""

    def test_cancel(self):
        token = CancellationToken()
        self.assertFalse(token.cancelled)
        self.assertIsNone(token.remaining())

        token.cancel()

        self.assertTrue(token.cancelled)
        with self.assertRaises(BuildCancelled):
            token.check("Build")

    def test_deadline(self):
        clock = FakeClock()
        token = CancellationToken(deadline=110.0, clock=clock)
        self.assertEqual(token.remaining(), 10.0)

        clock.now = 111.0

        self.assertTrue(token.cancelled)
        self.assertEqual(token.remaining(), 0.0)

    def test_narrowed_keeps_earlier_deadline_and_shares_flag(self):
        clock = FakeClock()
        parent = CancellationToken(deadline=105.0, clock=clock)

        child = parent.narrowed(60)
        self.assertEqual(child.deadline, 105.0)
        self.assertEqual(CancellationToken(clock=clock).narrowed(60).deadline, 160.0)

        parent.cancel()
        self.assertTrue(child.cancelled)

    def test_cancel_runs_callbacks_once(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append("abort"))
        unregister = token.on_cancel(lambda: calls.append("removed"))
        unregister()

        token.cancel()
        token.cancel()

        self.assertEqual(calls, ["abort"])

    def test_callback_on_cancelled_token_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []

        token.on_cancel(lambda: calls.append("abort"))

        self.assertEqual(calls, ["abort"])

    def test_narrowed_token_shares_callbacks(self):
        parent = CancellationToken()
        child = parent.narrowed(60)
        calls = []
        child.on_cancel(lambda: calls.append("abort"))

        parent.cancel()

        self.assertEqual(calls, ["abort"])


class TestRegistryCredentials(unittest.TestCase):
    """Tests for RegistryCredentials."""

    def test_qualify(self):
        credentials = RegistryCredentials(registry_url="https://registry.example.com/")

        self.assertEqual(credentials.registry_host, "registry.example.com")
        self.assertEqual(
            credentials.qualify("obtura/shop-web:b1"), "registry.example.com/obtura/shop-web:b1"
        )
        self.assertEqual(
            credentials.qualify("registry.example.com/obtura/shop-web:b1"),
            "registry.example.com/obtura/shop-web:b1",
        )

    def test_without_registry(self):
        credentials = RegistryCredentials()

        self.assertEqual(credentials.qualify("obtura/shop-web:b1"), "obtura/shop-web:b1")
        self.assertIsNone(credentials.auth_config())

    def test_auth_config(self):
        credentials = RegistryCredentials.from_config(
            {
                "registry_url": "registry.example.com",
                "registry_username": "builder",
                "registry_password": "secret",
            }
        )

        self.assertEqual(
            credentials.auth_config(),
            {"username": "builder", "password": "secret", "serveraddress": "registry.example.com"},
        )


class TestHelpers(unittest.TestCase):
    """Tests for reference and event helpers."""

    def test_split_reference(self):
        self.assertEqual(split_reference("obtura/shop-web:b1"), ("obtura/shop-web", "b1"))
        self.assertEqual(split_reference("localhost:5000/shop"), ("localhost:5000/shop", "latest"))
        self.assertEqual(
            split_reference("localhost:5000/shop:b2"), ("localhost:5000/shop", "b2")
        )

    def test_event_error(self):
        self.assertIsNone(event_error({"stream": "Step 1/4"}))
        self.assertEqual(event_error({"error": "boom"}), "boom")
        self.assertEqual(event_error({"errorDetail": {"message": "denied"}}), "denied")


class TestEngineClient(unittest.TestCase):
    """Tests for EngineClient."""

    @patch("obtura.build_mcp_server.utils.docker.docker.from_env")
    def test_client_created_once(self, mock_from_env):
        engine = EngineClient()
        clients = []

        def get():
            clients.append(engine.get())

        threads = [threading.Thread(target=get) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        mock_from_env.assert_called_once_with(timeout=60)
        self.assertEqual(len(set(map(id, clients))), 1)

    @patch("obtura.build_mcp_server.utils.docker.docker.DockerClient")
    def test_explicit_base_url(self, mock_client_class):
        EngineClient(base_url="tcp://builder:2375").get()

        mock_client_class.assert_called_once_with(base_url="tcp://builder:2375", timeout=60)

    @patch("obtura.build_mcp_server.utils.docker.docker.from_env")
    def test_creation_failure(self, mock_from_env):
        mock_from_env.side_effect = DockerException("no socket")

        with self.assertRaises(EngineUnavailable):
            EngineClient().get()

    @patch("obtura.build_mcp_server.utils.docker.docker.from_env")
    def test_connect_failure_is_not_fatal(self, mock_from_env):
        mock_from_env.return_value.ping.side_effect = requests.exceptions.ConnectionError("refused")
        engine = EngineClient()

        self.assertFalse(engine.connect())
        mock_from_env.return_value.close.assert_called_once()

        mock_from_env.return_value.ping.side_effect = None
        self.assertTrue(engine.connect())
        self.assertEqual(mock_from_env.call_count, 2)


class TestImageBuilder(unittest.TestCase):
    """Tests for ImageBuilder."""

    def setUp(self):
        """Set up test fixtures."""
        self.client = MagicMock()
        self.engine = MagicMock()
        self.engine.get.return_value = self.client
        self.builder = ImageBuilder(
            self.engine,
            RegistryCredentials(registry_url="registry.example.com", username="u", password="p"),
        )

    def test_build_streams_events(self):
        events = [{"stream": "Step 1/2 : FROM node\n"}, {"aux": {"ID": "sha256:abc"}}]
        self.client.api.build.return_value = iter(events)

        result = list(self.builder.build("/checkout/web", "obtura/shop-web:b1"))

        self.assertEqual(result, events)
        _, kwargs = self.client.api.build.call_args
        self.assertEqual(kwargs["path"], "/checkout/web")
        self.assertEqual(kwargs["tag"], "obtura/shop-web:b1")
        self.assertEqual(kwargs["dockerfile"], "Dockerfile")
        self.assertEqual(kwargs["platform"], "linux/amd64")
        self.assertTrue(kwargs["decode"])
        self.assertIsNone(kwargs["timeout"])

    def test_build_timeout_follows_deadline(self):
        self.client.api.build.return_value = iter([])
        clock = FakeClock()

        list(self.builder.build("/ctx", "img:1", CancellationToken(deadline=130.5, clock=clock)))

        self.assertEqual(self.client.api.build.call_args[1]["timeout"], 30)

    def test_build_error_event(self):
        self.client.api.build.return_value = iter(
            [{"stream": "Step 1/2\n"}, {"error": "npm ERR! missing script: build"}]
        )
        seen = []

        with self.assertRaises(EngineBuildFailed) as ctx:
            for event in self.builder.build("/ctx", "img:1"):
                seen.append(event)

        self.assertEqual(len(seen), 2)
        self.assertIn("missing script", str(ctx.exception))

    def test_build_refused(self):
        self.client.api.build.side_effect = APIError("Cannot locate specified Dockerfile")

        with self.assertRaises(EngineBuildFailed):
            self.builder.build("/ctx", "img:1")

    def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()

        with self.assertRaises(BuildCancelled):
            self.builder.build("/ctx", "img:1", token)
        self.client.api.build.assert_not_called()

    def test_cancelled_while_streaming(self):
        token = CancellationToken()
        stream = MagicMock()
        stream.__iter__.return_value = iter([{"stream": "a"}, {"stream": "b"}, {"stream": "c"}])
        self.client.api.build.return_value = stream

        seen = []
        with self.assertRaises(BuildCancelled):
            for event in self.builder.build("/ctx", "img:1", token):
                seen.append(event)
                token.cancel()

        self.assertEqual(seen, [{"stream": "a"}])
        stream.close.assert_called_once()

    def test_cancel_aborts_silent_stream(self):
        """Test that cancel() from another thread ends a read the engine is not answering."""
        token = CancellationToken()
        closed = threading.Event()

        class SilentStream:
            def __iter__(self):
                return self

            def __next__(self):
                closed.wait(5)
                raise requests.exceptions.ConnectionError("connection closed")

            def close(self):
                closed.set()

        self.client.api.build.return_value = SilentStream()
        timer = threading.Timer(0.2, token.cancel)
        started = time.monotonic()
        timer.start()
        try:
            with self.assertRaises(BuildCancelled):
                list(self.builder.build("/ctx", "img:1", token))
        finally:
            timer.cancel()

        self.assertLess(time.monotonic() - started, 2)

    def test_cancel_shuts_down_engine_connection(self):
        """Test that cancelling a docker SDK stream shuts its HTTP connection down."""
        token = CancellationToken()
        response = MagicMock()
        sock = response.raw._fp.fp.raw._sock
        released = threading.Event()
        sock.shutdown.side_effect = lambda how: released.set()

        def stream_helper(response):
            yield {"stream": "Step 1/3 : RUN make\n"}
            # the SDK's read loop ends once the connection is gone
            released.wait(5)

        self.client.api.build.return_value = stream_helper(response)
        seen = []
        timer = threading.Timer(0.2, token.cancel)
        started = time.monotonic()
        timer.start()
        try:
            with self.assertRaises(BuildCancelled):
                for event in self.builder.build("/ctx", "img:1", token):
                    seen.append(event)
        finally:
            timer.cancel()

        self.assertLess(time.monotonic() - started, 2)
        self.assertEqual(len(seen), 1)
        sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
        response.close.assert_called_once()

    def test_abort_with_finished_stream_is_quiet(self):
        token = CancellationToken()
        stream = MagicMock()
        stream.__iter__.return_value = iter([{"stream": "done"}])
        self.client.api.build.return_value = stream

        list(self.builder.build("/ctx", "img:1", token))
        token.cancel()

        stream.close.assert_called_once()

    def test_reconnects_once(self):
        self.client.api.build.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            iter([{"stream": "ok"}]),
        ]

        self.assertEqual(list(self.builder.build("/ctx", "img:1")), [{"stream": "ok"}])
        self.engine.reset.assert_called_once()

    def test_gives_up_after_reconnect(self):
        self.engine.get.side_effect = EngineUnavailable("down")

        with self.assertRaises(EngineUnavailable):
            self.builder.build("/ctx", "img:1")
        self.assertEqual(self.engine.reset.call_count, 2)

    def test_connection_lost_while_streaming(self):
        def stream():
            yield {"stream": "Step 1/2\n"}
            raise requests.exceptions.ConnectionError("broken pipe")

        self.client.api.build.return_value = stream()

        with self.assertRaises(EngineUnavailable):
            list(self.builder.build("/ctx", "img:1"))

    def test_push(self):
        self.client.api.push.return_value = iter([{"status": "Pushed", "id": "abc"}])

        events = list(self.builder.push("registry.example.com/obtura/shop-web:b1"))

        self.assertEqual(events, [{"status": "Pushed", "id": "abc"}])
        self.client.api.push.assert_called_once_with(
            "registry.example.com/obtura/shop-web",
            tag="b1",
            stream=True,
            decode=True,
            auth_config={"username": "u", "password": "p", "serveraddress": "registry.example.com"},
        )

    def test_push_error_event(self):
        self.client.api.push.return_value = iter(
            [{"status": "Preparing"}, {"errorDetail": {"message": "denied: access forbidden"}}]
        )

        with self.assertRaises(EnginePushFailed) as ctx:
            list(self.builder.push("obtura/shop-web:b1"))

        self.assertIn("access forbidden", str(ctx.exception))


class TestMeasureBuildContext(unittest.TestCase):
    """Tests for measure_build_context."""

    def test_skips_dependency_directories(self):
        with tempfile.TemporaryDirectory() as app_path:
            with open(os.path.join(app_path, "index.js"), "w") as f:
                f.write("x" * 100)
            os.makedirs(os.path.join(app_path, "src"))
            with open(os.path.join(app_path, "src", "app.js"), "w") as f:
                f.write("y" * 50)
            os.makedirs(os.path.join(app_path, "node_modules", "left-pad"))
            with open(os.path.join(app_path, "node_modules", "left-pad", "index.js"), "w") as f:
                f.write("z" * 1000)

            self.assertEqual(measure_build_context(app_path), 150)


if __name__ == "__main__":
    unittest.main()
