"""Tests for peerwave_chat/peerwave_api.py.

``requests`` is never hit: a :class:`~tests.fakes.FakeSession` stands in
for the HTTP session and replays canned streaming responses.
"""

import threading
import time
import unittest

import requests

from peerwave_chat.auth import CredentialHolder
from peerwave_chat.conversation import ConversationStore, Message
from peerwave_chat.peerwave_api import (
    AuthRedirect,
    Cancelled,
    ChatStreamClient,
    Completed,
    Failed,
    PeerwaveAPIError,
    RequestContext,
    build_headers,
    build_payload,
)
from peerwave_chat.storage import ChatStorage
from tests.fakes import (
    FakeResponse,
    FakeSession,
    RecordingView,
    StallingResponse,
    ok_stream,
)


def _context(*texts: str, credential: str | None = None) -> RequestContext:
    history = [Message(role="user", content=t) for t in texts] or [
        Message(role="user", content="hi"),
    ]
    return RequestContext(history_window=history, credential=credential)


def _run(client: ChatStreamClient, context: RequestContext,
         view: RecordingView, cancel=None):
    return client.run(context, view.render_partial, view.report_status,
                      cancel=cancel)


class TestRequestBuilding(unittest.TestCase):

    def test_payload_has_only_role_and_content(self) -> None:
        history = [Message(role="user", content="q"),
                   Message(role="assistant", content="a", model="m")]
        self.assertEqual(build_payload(history), {
            "model": "cheapest",
            "messages": [{"role": "user", "content": "q"},
                         {"role": "assistant", "content": "a"}],
        })

    def test_headers_without_credential(self) -> None:
        headers = build_headers(_context())
        self.assertEqual(headers["Content-Type"], "application/json")
        self.assertEqual(headers["Redirect"], "/")
        self.assertNotIn("Authorization", headers)

    def test_headers_with_credential(self) -> None:
        headers = build_headers(_context(credential="tok123"))
        self.assertEqual(headers["Authorization"], "tok123")

    def test_context_built_from_store_window(self) -> None:
        store = ConversationStore(ChatStorage(":memory:"))
        for i in range(30):
            store.add_user_message(f"m{i}")
        context = RequestContext.build(store, CredentialHolder("t"),
                                       window=20)
        self.assertEqual(len(context.history_window), 20)
        self.assertEqual(context.history_window[0].content, "m10")
        self.assertEqual(context.credential, "t")

    def test_request_sent_to_stream_endpoint(self) -> None:
        session = FakeSession(ok_stream())
        client = ChatStreamClient("https://example.test/", session=session)
        _run(client, _context(), RecordingView())
        call = session.calls[0]
        self.assertEqual(call["url"], "https://example.test/api/chat/stream")
        self.assertTrue(call["stream"])
        self.assertFalse(call["allow_redirects"])
        self.assertEqual(call["json"]["messages"],
                         [{"role": "user", "content": "hi"}])


class TestStreaming(unittest.TestCase):

    def test_hello_example(self) -> None:
        session = FakeSession(ok_stream(
            {"message": {"content": "Hel"}},
            {"message": {"content": "lo"}},
            {"Credits": 3},
        ))
        view = RecordingView()
        outcome = _run(ChatStreamClient(session=session), _context(), view)
        self.assertEqual(outcome, Completed("Hello", None))
        self.assertEqual([p[0] for p in view.partials], ["Hel", "Hello"])
        self.assertIn("Credits used: 3", view.statuses)

    def test_malformed_line_does_not_change_result(self) -> None:
        response = FakeResponse(200, chunks=[
            b'{"message":{"content":"Hel"}}\nnot json\n',
            b'{"message":{"content":"lo"}}\n{"Credits":3}\n',
        ])
        view = RecordingView()
        with self.assertLogs("peerwave_chat", level="WARNING"):
            outcome = _run(ChatStreamClient(session=FakeSession(response)),
                           _context(), view)
        self.assertEqual(outcome, Completed("Hello", None))
        self.assertIn("Credits used: 3", view.statuses)

    def test_last_seen_model_reported(self) -> None:
        session = FakeSession(ok_stream(
            {"message": {"content": "a"}, "model": "m1"},
            {"message": {"content": "b"}, "model": "m2"},
        ))
        view = RecordingView()
        outcome = _run(ChatStreamClient(session=session), _context(), view)
        self.assertEqual(outcome, Completed("ab", "m2"))
        self.assertEqual(view.partials, [("a", "m1"), ("ab", "m2")])

    def test_empty_stream_is_completed(self) -> None:
        session = FakeSession(FakeResponse(200, chunks=[]))
        outcome = _run(ChatStreamClient(session=session), _context(),
                       RecordingView())
        self.assertEqual(outcome, Completed("", None))

    def test_multibyte_split_reconstructed(self) -> None:
        body = '{"message":{"content":"€uro"}}\n'.encode("utf-8")
        cut = body.index("€".encode("utf-8")) + 2
        session = FakeSession(FakeResponse(200, chunks=[body[:cut], body[cut:]]))
        with self.assertNoLogs("peerwave_chat", level="WARNING"):
            outcome = _run(ChatStreamClient(session=session), _context(),
                           RecordingView())
        self.assertEqual(outcome, Completed("€uro", None))

    def test_response_closed_after_stream(self) -> None:
        response = ok_stream({"message": {"content": "x"}})
        _run(ChatStreamClient(session=FakeSession(response)), _context(),
             RecordingView())
        self.assertTrue(response.closed)


class TestOutcomeClassification(unittest.TestCase):

    def test_redirect_signal_is_auth_redirect(self) -> None:
        response = FakeResponse(402, headers={"Location": "https://auth.test/x"})
        outcome = _run(ChatStreamClient(session=FakeSession(response)),
                       _context(), RecordingView())
        self.assertEqual(outcome, AuthRedirect("https://auth.test/x"))

    def test_server_error_without_redirect_fails(self) -> None:
        response = FakeResponse(500, text='{"error": "boom"}')
        with self.assertLogs("peerwave_chat", level="ERROR"):
            outcome = _run(ChatStreamClient(session=FakeSession(response)),
                           _context(), RecordingView())
        self.assertIsInstance(outcome, Failed)
        self.assertEqual(outcome.kind, "server")
        self.assertEqual(outcome.status_code, 500)
        self.assertIn("Chat request failed: 500 - boom", outcome.reason)

    def test_server_failure_carries_api_error(self) -> None:
        response = FakeResponse(500, text='{"error": "boom"}')
        with self.assertLogs("peerwave_chat", level="ERROR"):
            outcome = _run(ChatStreamClient("https://example.test",
                                            session=FakeSession(response)),
                           _context("a", "b"), RecordingView())
        self.assertIsInstance(outcome.error, PeerwaveAPIError)
        self.assertEqual(outcome.error.status_code, 500)
        self.assertEqual(outcome.error.endpoint,
                         "https://example.test/api/chat/stream")
        self.assertEqual(outcome.error.response_body, '{"error": "boom"}')
        self.assertEqual(outcome.error.payload_summary["messages"],
                         "[2 messages]")

    def test_broken_error_body_is_failure_not_exception(self) -> None:
        response = FakeResponse(
            503,
            body_error=requests.exceptions.ChunkedEncodingError(
                "Connection broken: IncompleteRead(14 bytes read)",
            ),
        )
        with self.assertLogs("peerwave_chat", level="WARNING"):
            outcome = _run(ChatStreamClient(session=FakeSession(response)),
                           _context(), RecordingView())
        self.assertIsInstance(outcome, Failed)
        self.assertEqual(outcome.kind, "server")
        self.assertEqual(outcome.status_code, 503)
        self.assertIn("(unreadable body)", outcome.reason)

    def test_plain_text_error_body(self) -> None:
        response = FakeResponse(503, text="Service Unavailable")
        with self.assertLogs("peerwave_chat", level="ERROR"):
            outcome = _run(ChatStreamClient(session=FakeSession(response)),
                           _context(), RecordingView())
        self.assertIn("Service Unavailable", outcome.reason)

    def test_connection_error_is_network_failure(self) -> None:
        session = FakeSession(requests.ConnectionError("refused"))
        with self.assertLogs("peerwave_chat", level="WARNING"):
            outcome = _run(ChatStreamClient(session=session), _context(),
                           RecordingView())
        self.assertIsInstance(outcome, Failed)
        self.assertEqual(outcome.kind, "network")

    def test_interrupted_body_is_network_failure(self) -> None:
        response = FakeResponse(
            200,
            chunks=[b'{"message":{"content":"partial"}}\n'],
            raise_after=requests.exceptions.ChunkedEncodingError("cut"),
        )
        view = RecordingView()
        with self.assertLogs("peerwave_chat", level="WARNING"):
            outcome = _run(ChatStreamClient(session=FakeSession(response)),
                           _context(), view)
        self.assertIsInstance(outcome, Failed)
        self.assertEqual(outcome.kind, "network")
        self.assertEqual(view.partials, [("partial", None)])

    def test_cancel_before_request(self) -> None:
        session = FakeSession()
        cancel = threading.Event()
        cancel.set()
        outcome = _run(ChatStreamClient(session=session), _context(),
                       RecordingView(), cancel=cancel)
        self.assertEqual(outcome, Cancelled())
        self.assertEqual(session.calls, [])

    def test_cancel_during_stream(self) -> None:
        cancel = threading.Event()
        view = RecordingView()

        class _CancellingView(RecordingView):
            def render_partial(self, text, model) -> None:
                view.render_partial(text, model)
                cancel.set()

        response = FakeResponse(200, chunks=[
            b'{"message":{"content":"one"}}\n',
            b'{"message":{"content":"two"}}\n',
        ])
        cancelling = _CancellingView()
        with self.assertLogs("peerwave_chat", level="INFO"):
            outcome = ChatStreamClient(session=FakeSession(response)).run(
                _context(), cancelling.render_partial,
                cancelling.report_status, cancel=cancel,
            )
        self.assertEqual(outcome, Cancelled())
        self.assertEqual(view.partials, [("one", None)])

    def test_no_partial_after_cancel_from_final_flush(self) -> None:
        cancel = threading.Event()
        partials: list[str] = []

        def _render_then_cancel(text, model) -> None:
            partials.append(text)
            cancel.set()

        # The second record has no newline, so it is only parsed on flush.
        response = FakeResponse(200, chunks=[
            b'{"message":{"content":"one"}}\n{"message":{"content":"two"}}',
        ])
        with self.assertLogs("peerwave_chat", level="INFO"):
            outcome = ChatStreamClient(session=FakeSession(response)).run(
                _context(), _render_then_cancel, None, cancel=cancel,
            )
        self.assertEqual(outcome, Cancelled())
        self.assertEqual(partials, ["one"])

    def test_cancel_unblocks_stalled_read(self) -> None:
        cancel = threading.Event()
        response = StallingResponse(
            chunks=[b'{"message":{"content":"first"}}\n'], stall=5.0,
        )

        def _cancel_soon(text, model) -> None:
            threading.Timer(0.1, cancel.set).start()

        started = time.monotonic()
        with self.assertLogs("peerwave_chat", level="INFO"):
            outcome = ChatStreamClient(session=FakeSession(response)).run(
                _context(), _cancel_soon, None, cancel=cancel,
            )
        elapsed = time.monotonic() - started
        self.assertEqual(outcome, Cancelled())
        self.assertTrue(response.closed)
        self.assertLess(elapsed, 2.0)


class TestPeerwaveAPIError(unittest.TestCase):

    def test_str_includes_diagnostics(self) -> None:
        err = PeerwaveAPIError("failed", status_code=500,
                               endpoint="https://x", model="cheapest",
                               response_body="oops",
                               payload_summary={"messages": "[2 messages]"})
        text = str(err)
        for part in ("failed", "HTTP 500", "https://x", "cheapest", "oops",
                     "[2 messages]"):
            self.assertIn(part, text)


if __name__ == "__main__":
    unittest.main()
