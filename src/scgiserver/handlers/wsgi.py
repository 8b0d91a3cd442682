"""
=============================================================================
WSGI ADAPTER
=============================================================================

Turns a PEP 3333 application into a request handler for SCGIProcessor.

    SCGI headers ──► environ          (headers ARE the CGI environment)
    SCGI body    ──► wsgi.input       (BytesIO)
    start_response + iterable ──► "Status: 200 OK\\r\\n" + headers + body

The response is CGI style: a ``Status:`` header instead of an HTTP status
line. The front-end web server rewrites it into a real HTTP response, the
same way it treats BUSY_RESPONSE.

=============================================================================
SERIALIZED APPLICATIONS
=============================================================================

Connections run on their own threads, so the application is called
concurrently. Applications that are not thread-safe can pass
``serialize=True``: every call (including iterating the response) then
runs under one lock, and ``wsgi.multithread`` is reported as False.

=============================================================================
"""

import importlib
import io
import logging
import sys
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.connection import ResponseWriter


logger = logging.getLogger(__name__)

WSGIApp = Callable[[Dict[str, Any], Callable[..., Any]], Iterable[bytes]]


def load_app(target: str) -> WSGIApp:
    """
    Import a WSGI application from ``"package.module:attribute"``.

    The attribute defaults to ``application`` when no colon is given.

    Raises:
        ImportError: Module not found.
        AttributeError: Attribute missing.
        TypeError: Attribute is not callable.
    """
    module_name, _, attribute = target.partition(":")
    module = importlib.import_module(module_name)
    app = module
    for part in (attribute or "application").split("."):
        app = getattr(app, part)
    if not callable(app):
        raise TypeError(f"{target} is not callable")
    logger.info(f"Loaded WSGI application {target}")
    return app


class WSGIHandler:
    """
    SCGI request handler that runs a WSGI application.

    Usage:
        from myapp import application
        processor = SCGIProcessor(WSGIHandler(application))
    """

    def __init__(
        self,
        app: WSGIApp,
        environment: str = "production",
        serialize: bool = False,
    ):
        """
        Args:
            app: The WSGI application.
            environment: Operating environment tag, exposed to the app as
                         ``environ["scgi.environment"]``.
            serialize: Run the application under a lock.
        """
        self.app = app
        self.environment = environment
        self.serialize = serialize
        self._guard = threading.Lock()

    def __call__(self, headers: Dict[str, str], body: bytes, writer: ResponseWriter) -> None:
        environ = self.build_environ(headers, body)
        if self.serialize:
            with self._guard:
                self._run(environ, writer)
        else:
            self._run(environ, writer)

    def build_environ(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """Build a PEP 3333 environ from SCGI headers and body."""
        environ: Dict[str, Any] = dict(headers)
        environ.setdefault("REQUEST_METHOD", "GET")
        environ.setdefault("SCRIPT_NAME", "")
        environ.setdefault("PATH_INFO", "")
        environ.setdefault("SERVER_NAME", "localhost")
        environ.setdefault("SERVER_PORT", "80")
        environ.setdefault("SERVER_PROTOCOL", "HTTP/1.0")

        https = environ.get("HTTPS", "off").lower() in ("on", "1", "yes")
        environ.update({
            "wsgi.version": (1, 0),
            "wsgi.url_scheme": "https" if https else "http",
            "wsgi.input": io.BytesIO(body),
            "wsgi.errors": sys.stderr,
            "wsgi.multithread": not self.serialize,
            "wsgi.multiprocess": False,
            "wsgi.run_once": False,
            "scgi.environment": self.environment,
        })
        return environ

    def _run(self, environ: Dict[str, Any], writer: ResponseWriter) -> None:
        headers_set: List[Any] = []
        headers_sent: List[bool] = []

        def write(data: bytes) -> None:
            if not headers_set:
                raise AssertionError("write() before start_response()")
            if not headers_sent:
                status, response_headers = headers_set
                head = f"Status: {status}\r\n"
                head += "".join(f"{name}: {value}\r\n" for name, value in response_headers)
                head += "\r\n"
                writer.write(head.encode("latin-1"))
                headers_sent.append(True)
            if data:
                writer.write(data)

        def start_response(
            status: str,
            response_headers: List[Tuple[str, str]],
            exc_info: Optional[tuple] = None,
        ) -> Callable[[bytes], None]:
            if exc_info:
                try:
                    if headers_sent:
                        raise exc_info[1].with_traceback(exc_info[2])
                finally:
                    exc_info = None
            elif headers_set:
                raise AssertionError("start_response() called twice")
            headers_set[:] = [status, response_headers]
            return write

        result = self.app(environ, start_response)
        try:
            for data in result:
                if data:
                    write(data)
            if not headers_sent:
                # Empty body: headers still have to go out
                write(b"")
        finally:
            close = getattr(result, "close", None)
            if close is not None:
                close()


def demo_app(environ: Dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
    """
    Built-in application used when the CLI is started without one.

    Echoes the request environment as plain text, which is handy for
    checking what the front-end web server actually sends.
    """
    lines = ["scgiserver is running", ""]
    for key in sorted(environ):
        if key.startswith("wsgi."):
            continue
        lines.append(f"{key} = {environ[key]}")
    body = ("\n".join(lines) + "\n").encode("utf-8", errors="replace")
    start_response("200 OK", [
        ("Content-Type", "text/plain; charset=utf-8"),
        ("Content-Length", str(len(body))),
    ])
    return [body]
