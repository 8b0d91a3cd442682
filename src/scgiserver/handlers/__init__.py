"""
=============================================================================
REQUEST HANDLERS
=============================================================================

A request handler is any callable ``handler(headers, body, writer)`` that
writes a complete, already formatted response to ``writer``. This package
ships the adapter most applications need:

    WSGIHandler / load_app()
    - Runs a PEP 3333 application behind the processor
    - Optional serialization for apps that are not thread-safe

    demo_app
    - Echoes the SCGI environment, used by the CLI when no app is given

=============================================================================
USAGE
=============================================================================

    from scgiserver import SCGIProcessor
    from scgiserver.handlers import WSGIHandler, load_app

    app = load_app("myproject.wsgi:application")
    SCGIProcessor(WSGIHandler(app, serialize=True)).listen()

=============================================================================
"""

from .wsgi import WSGIHandler, demo_app, load_app

__all__ = [
    "WSGIHandler",
    "demo_app",
    "load_app",
]
