"""Single-tenant Gmail relay with a single-flight send gate.

This package exposes a small HTTP service that accepts e-mail send requests
and relays them to Gmail over authenticated SMTP. Only one send may be in
flight at a time; a second caller is rejected immediately and an operator can
request cooperative cancellation of the running send.

Example:
    Basic usage with the FastAPI application::

        from gmail_relay.core import RelayService
        from gmail_relay.api import create_app

        service = RelayService(port=3001)
        app = create_app(service)
"""

__version__ = "1.0.0"
