"""
Unit tests for the WSGI adapter.
"""

import io
import sys
import threading
import time
import types

import pytest

from scgiserver.handlers import WSGIHandler, demo_app, load_app


def hello_app(environ, start_response):
    start_response("200 OK", [("Content-Type", "text/plain")])
    return [b"Hello, ", environ["PATH_INFO"].encode()]


class ClosingResult:
    """Response iterable that records close()."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    def __iter__(self):
        return iter(self.chunks)

    def close(self):
        self.closed = True


class TestResponse:
    """Tests for CGI style response output."""

    def test_status_headers_body(self, sample_headers):
        writer = io.BytesIO()

        WSGIHandler(hello_app)(sample_headers, b"", writer)

        assert writer.getvalue() == (
            b"Status: 200 OK\r\n"
            b"Content-Type: text/plain\r\n"
            b"\r\n"
            b"Hello, /hello"
        )

    def test_empty_body_still_sends_headers(self):
        def app(environ, start_response):
            start_response("204 No Content", [])
            return []

        writer = io.BytesIO()
        WSGIHandler(app)({}, b"", writer)

        assert writer.getvalue() == b"Status: 204 No Content\r\n\r\n"

    def test_write_callable(self):
        def app(environ, start_response):
            write = start_response("200 OK", [("X-Mode", "push")])
            write(b"pushed ")
            return [b"returned"]

        writer = io.BytesIO()
        WSGIHandler(app)({}, b"", writer)

        assert writer.getvalue().endswith(b"\r\n\r\npushed returned")

    def test_result_closed(self):
        result = ClosingResult([b"x"])
        writer = io.BytesIO()

        def app(environ, start_response):
            start_response("200 OK", [])
            return result

        WSGIHandler(app)({}, b"", writer)

        assert result.closed

    def test_app_exception_propagates(self):
        def app(environ, start_response):
            raise KeyError("missing")

        with pytest.raises(KeyError):
            WSGIHandler(app)({}, b"", io.BytesIO())

    def test_start_response_twice(self):
        def app(environ, start_response):
            start_response("200 OK", [])
            start_response("500 Internal Server Error", [])
            return []

        with pytest.raises(AssertionError):
            WSGIHandler(app)({}, b"", io.BytesIO())

    def test_exc_info_after_headers_sent(self):
        def app(environ, start_response):
            write = start_response("200 OK", [])
            write(b"partial")
            try:
                raise ValueError("late failure")
            except ValueError:
                start_response("500 Internal Server Error", [], sys.exc_info())
            return []

        with pytest.raises(ValueError, match="late failure"):
            WSGIHandler(app)({}, b"", io.BytesIO())

    def test_exc_info_before_headers_sent_replaces_status(self):
        def app(environ, start_response):
            start_response("200 OK", [])
            try:
                raise ValueError("early failure")
            except ValueError:
                start_response("500 Internal Server Error", [], sys.exc_info())
            return [b"oops"]

        writer = io.BytesIO()
        WSGIHandler(app)({}, b"", writer)

        assert writer.getvalue().startswith(b"Status: 500 Internal Server Error\r\n")


class TestEnviron:
    """Tests for environ construction."""

    def test_headers_and_wsgi_keys(self, sample_headers):
        handler = WSGIHandler(hello_app, environment="staging")

        environ = handler.build_environ(sample_headers, b"body bytes")

        assert environ["REQUEST_URI"] == "/hello?name=world"
        assert environ["wsgi.version"] == (1, 0)
        assert environ["wsgi.input"].read() == b"body bytes"
        assert environ["wsgi.url_scheme"] == "http"
        assert environ["wsgi.multithread"] is True
        assert environ["wsgi.multiprocess"] is False
        assert environ["wsgi.run_once"] is False
        assert environ["scgi.environment"] == "staging"

    def test_defaults_filled(self):
        environ = WSGIHandler(hello_app).build_environ({}, b"")
        assert environ["REQUEST_METHOD"] == "GET"
        assert environ["SCRIPT_NAME"] == ""
        assert environ["PATH_INFO"] == ""

    @pytest.mark.parametrize("value, scheme", [
        ("on", "https"),
        ("1", "https"),
        ("off", "http"),
    ])
    def test_url_scheme(self, value, scheme):
        environ = WSGIHandler(hello_app).build_environ({"HTTPS": value}, b"")
        assert environ["wsgi.url_scheme"] == scheme

    def test_serialized_not_multithread(self):
        environ = WSGIHandler(hello_app, serialize=True).build_environ({}, b"")
        assert environ["wsgi.multithread"] is False


class TestSerialize:
    """Tests for single-flight application calls."""

    def test_one_call_at_a_time(self):
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def slow_app(environ, start_response):
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.02)
            with lock:
                state["running"] -= 1
            start_response("200 OK", [])
            return [b"ok"]

        handler = WSGIHandler(slow_app, serialize=True)
        threads = [
            threading.Thread(target=handler, args=({}, b"", io.BytesIO()))
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert state["peak"] == 1


class TestLoadApp:
    """Tests for importing applications by name."""

    def test_module_and_attribute(self):
        assert load_app("scgiserver.handlers.wsgi:demo_app") is demo_app

    def test_default_attribute(self, monkeypatch):
        module = types.ModuleType("fake_wsgi_project")
        module.application = hello_app
        monkeypatch.setitem(sys.modules, "fake_wsgi_project", module)

        assert load_app("fake_wsgi_project") is hello_app

    def test_missing_module(self):
        with pytest.raises(ImportError):
            load_app("no_such_module_anywhere:app")

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            load_app("scgiserver.handlers.wsgi:nope")

    def test_not_callable(self):
        with pytest.raises(TypeError):
            load_app("scgiserver:__version__")


class TestDemoApp:
    """Tests for the built-in demo application."""

    def test_echoes_environment(self, sample_headers):
        writer = io.BytesIO()

        WSGIHandler(demo_app)(sample_headers, b"", writer)

        output = writer.getvalue()
        assert output.startswith(b"Status: 200 OK\r\n")
        assert b"Content-Type: text/plain; charset=utf-8\r\n" in output
        assert b"REQUEST_URI = /hello?name=world" in output
