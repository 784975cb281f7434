"""Scoped HTTP responder for http-01 challenges.

A responder binds the challenge port on IPv6 and, where the IPv6 socket
does not already accept IPv4 connections, on IPv4 too. It answers only
for the key authorizations it was started with.

"""
import collections
import functools
import http.client as http_client
import http.server
import logging
import socket
import socketserver
import threading
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple
from typing import Type

from acmeclient import challenges

logger = logging.getLogger(__name__)


class DualStackServers:
    """One server per address family, all on the same port.

    Binding IPv4 fails on systems where the IPv6 socket is dual stack;
    that is expected and only logged. Construction fails only when no
    family could be bound.

    """

    def __init__(self, server_cls: Type[socketserver.TCPServer], server_address: Tuple[str, int],
                 *args: Any, **kwargs: Any) -> None:
        host, port = server_address[:2]
        self.threads: List[threading.Thread] = []
        self.servers: List[socketserver.BaseServer] = []
        bind_error: Optional[OSError] = None

        # IPv6 first: once it holds the port, IPv4 may legitimately fail.
        for ipv6 in (True, False):
            family = "IPv6" if ipv6 else "IPv4"
            try:
                server = server_cls((host, port), *args, ipv6=ipv6, **kwargs)
            except OSError as error:
                bind_error = error
                logger.debug("Unable to bind to %s:%s using %s%s", host, port, family,
                             " (IPv6 socket is probably dual stack)" if self.servers else "")
                continue
            logger.debug("Bound to %s:%s using %s", host, port, family)
            self.servers.append(server)
            # Port 0 picks a free port; the other family must reuse it.
            port = server.socket.getsockname()[1]

        if not self.servers:
            raise bind_error if bind_error is not None else OSError(
                "Could not bind to IPv4 or IPv6.")

    def serve_forever(self) -> None:
        """Serve every bound socket from its own daemon thread."""
        for server in self.servers:
            thread = threading.Thread(target=server.serve_forever, daemon=True)
            thread.start()
            self.threads.append(thread)

    def getsocknames(self) -> List[Tuple[str, int]]:
        return [server.socket.getsockname() for server in self.servers]

    def shutdown_and_server_close(self) -> None:
        """Stop serving and release every socket."""
        for server in self.servers:
            if self.threads:
                server.shutdown()
            server.server_close()
        for thread in self.threads:
            thread.join()
        self.threads = []


class HTTP01Server(http.server.HTTPServer):
    """HTTP server answering http-01 validation requests."""
    allow_reuse_address = True

    def __init__(self, server_address: Tuple[str, int],
                 resources: Iterable['HTTP01RequestHandler.HTTP01Resource'],
                 ipv6: bool = False, timeout: float = 30) -> None:
        self.address_family = socket.AF_INET6 if ipv6 else socket.AF_INET
        super().__init__(server_address, HTTP01RequestHandler.partial_init(
            resources=resources, timeout=timeout))


class HTTP01DualNetworkedServers(DualStackServers):
    """`HTTP01Server` on every address family."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(HTTP01Server, *args, **kwargs)


class HTTP01RequestHandler(http.server.BaseHTTPRequestHandler):
    """Serves the key authorization of each known token as ``text/plain``.

    Any other path gets a 404.

    """
    HTTP01Resource = collections.namedtuple(
        "HTTP01Resource", "chall response validation")

    CONTENT_TYPE = "text/plain"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        resources = kwargs.pop("resources", ())
        self._timeout = kwargs.pop("timeout", 30)
        # Resources may be added while serving, so lookups go through
        # the live collection.
        self.resources = resources
        super().__init__(*args, **kwargs)

    # The stdlib reads ``timeout`` from the class; this one is per server.
    @property
    def timeout(self) -> float:  # type: ignore[override]
        return self._timeout

    def log_message(self, format: str, *args: Any) -> None:  # pylint: disable=redefined-builtin
        logger.debug("%s - - %s", self.client_address[0], format % args)

    def do_GET(self) -> None:  # pylint: disable=invalid-name,missing-function-docstring
        resource = self._by_path().get(self.path)
        if resource is None:
            self.log_message("No key authorization for %s", self.path)
            self._send(http_client.NOT_FOUND, b"404")
            return
        self.log_message("Serving http-01 key authorization for token %r",
                         resource.chall.encode("token"))
        self._send(http_client.OK, resource.validation.encode())

    def _by_path(self) -> Dict[str, 'HTTP01RequestHandler.HTTP01Resource']:
        root = "/" + challenges.HTTP01.URI_ROOT_PATH + "/"
        if not self.path.startswith(root):
            return {}
        return {resource.chall.path: resource for resource in self.resources}

    def _send(self, code: int, body: bytes) -> None:
        self.send_response(code)
        self.send_header("Content-Type", self.CONTENT_TYPE)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    @classmethod
    def partial_init(cls, resources: Iterable['HTTP01RequestHandler.HTTP01Resource'],
                     timeout: float) -> 'functools.partial[HTTP01RequestHandler]':
        """Handler factory bound to ``resources``.

        `socketserver.BaseServer` instantiates its handler class once per
        request.

        """
        return functools.partial(cls, resources=resources, timeout=timeout)
