"""Tests for acmeclient.standalone."""
import http.client as http_client
import socket
import socketserver
import sys
import threading
from typing import Set
import unittest
from unittest import mock

import josepy as jose
import pytest
import requests

from acmeclient import challenges
from acmeclient._internal.tests import test_util


class HTTP01ServerTest(unittest.TestCase):
    """Tests for acmeclient.standalone.HTTP01Server."""

    def setUp(self):
        self.account_key = test_util.rsa_jwk()
        self.resources: Set = set()

        from acmeclient.standalone import HTTP01Server
        self.server = HTTP01Server(('', 0), resources=self.resources)

        self.port = self.server.socket.getsockname()[1]
        self.thread = threading.Thread(target=self.server.serve_forever)
        self.thread.start()

    def tearDown(self):
        self.server.shutdown()
        self.thread.join()
        self.server.server_close()

    def _add_resource(self, token=b'x' * 16):
        chall = challenges.HTTP01(token=token)
        response, validation = chall.response_and_validation(self.account_key)

        from acmeclient.standalone import HTTP01RequestHandler
        resource = HTTP01RequestHandler.HTTP01Resource(
            chall=chall, response=response, validation=validation)
        self.resources.add(resource)
        return resource

    def test_root_not_found(self):
        response = requests.get('http://localhost:{0}/'.format(self.port))
        assert response.status_code == http_client.NOT_FOUND

    def test_404(self):
        response = requests.get('http://localhost:{0}/foo'.format(self.port))
        assert response.status_code == http_client.NOT_FOUND

    def test_serves_key_authorization(self):
        resource = self._add_resource()
        response = requests.get(
            'http://localhost:{0}{1}'.format(self.port, resource.chall.path))
        assert response.status_code == http_client.OK
        assert response.headers['Content-Type'] == 'text/plain'
        assert response.content == resource.validation.encode()
        assert response.text == resource.response.key_authorization

    def test_unknown_token(self):
        self._add_resource()
        other = challenges.HTTP01(token=b'y' * 16)
        response = requests.get(
            'http://localhost:{0}{1}'.format(self.port, other.path))
        assert response.status_code == http_client.NOT_FOUND

    def test_resource_added_while_serving(self):
        chall = challenges.HTTP01(token=b'z' * 16)
        url = 'http://localhost:{0}{1}'.format(self.port, chall.path)
        assert requests.get(url).status_code == http_client.NOT_FOUND
        resource = self._add_resource(token=b'z' * 16)
        assert requests.get(url).text == resource.validation

    def test_path_outside_challenge_root(self):
        resource = self._add_resource()
        response = requests.get('http://localhost:{0}/{1}'.format(
            self.port, resource.chall.encode('token')))
        assert response.status_code == http_client.NOT_FOUND

    def test_timely_shutdown(self):
        from acmeclient.standalone import HTTP01Server
        with HTTP01Server(('', 0), resources=set(), timeout=0.05) as server:
            server_thread = threading.Thread(target=server.serve_forever)
            server_thread.start()

            with socket.socket() as client:
                client.connect(('localhost', server.socket.getsockname()[1]))

                stop_thread = threading.Thread(target=server.shutdown)
                stop_thread.start()
                server_thread.join(5.)

                is_hung = server_thread.is_alive()
                try:
                    client.shutdown(socket.SHUT_RDWR)
                except OSError:  # pragma: no cover
                    # may raise error because socket could already be closed
                    pass

                assert not is_hung, 'Server shutdown should not be hung'


class DualStackServersTest(unittest.TestCase):
    """Test for acmeclient.standalone.DualStackServers."""

    class SingleProtocolServer(socketserver.TCPServer):
        """Server that only serves on a single protocol. FreeBSD has this behavior for AF_INET6."""
        def __init__(self, *args, **kwargs):
            ipv6 = kwargs.pop("ipv6", False)
            if ipv6:
                self.address_family = socket.AF_INET6
                kwargs["bind_and_activate"] = False
            else:
                self.address_family = socket.AF_INET
            super().__init__(*args, **kwargs)
            if ipv6:
                # NB: On Windows, socket.IPPROTO_IPV6 constant may be missing.
                # We use the corresponding value (41) instead.
                level = getattr(socket, "IPPROTO_IPV6", 41)
                self.socket.setsockopt(level, socket.IPV6_V6ONLY, 1)
                try:
                    self.server_bind()
                    self.server_activate()
                except OSError:
                    self.server_close()
                    raise

    @mock.patch("socket.socket.bind")
    def test_fail_to_bind(self, mock_bind):
        from errno import EADDRINUSE

        from acmeclient.standalone import DualStackServers

        mock_bind.side_effect = OSError(EADDRINUSE, "Fake addr in use error")

        with pytest.raises(socket.error) as exc_info:
            DualStackServers(
                DualStackServersTest.SingleProtocolServer,
                ('', 0), socketserver.BaseRequestHandler)

        assert exc_info.value.errno == EADDRINUSE

    def test_ports_equal(self):
        from acmeclient.standalone import DualStackServers
        servers = DualStackServers(
            DualStackServersTest.SingleProtocolServer,
            ('', 0),
            socketserver.BaseRequestHandler)
        socknames = servers.getsocknames()
        prev_port = None
        # assert ports are equal
        for sockname in socknames:
            port = sockname[1]
            if prev_port:
                assert prev_port == port
            prev_port = port
        servers.shutdown_and_server_close()

    def test_close_without_serving(self):
        from acmeclient.standalone import DualStackServers
        servers = DualStackServers(
            DualStackServersTest.SingleProtocolServer,
            ('', 0), socketserver.BaseRequestHandler)
        port = servers.getsocknames()[0][1]
        servers.shutdown_and_server_close()

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(('', port))


class HTTP01DualNetworkedServersTest(unittest.TestCase):
    """Tests for acmeclient.standalone.HTTP01DualNetworkedServers."""

    def setUp(self):
        self.account_key = jose.JWKRSA(key=test_util.load_rsa_private_key())
        self.resources: Set = set()

        from acmeclient.standalone import HTTP01DualNetworkedServers
        self.servers = HTTP01DualNetworkedServers(('', 0), resources=self.resources)

        self.port = self.servers.getsocknames()[0][1]
        self.servers.serve_forever()

    def tearDown(self):
        self.servers.shutdown_and_server_close()

    def test_root_not_found(self):
        response = requests.get('http://localhost:{0}/'.format(self.port))
        assert response.status_code == http_client.NOT_FOUND

    def test_404(self):
        response = requests.get('http://localhost:{0}/foo'.format(self.port))
        assert response.status_code == http_client.NOT_FOUND

    def _test_http01(self, add):
        chall = challenges.HTTP01(token=(b'x' * 16))
        response, validation = chall.response_and_validation(self.account_key)

        from acmeclient.standalone import HTTP01RequestHandler
        resource = HTTP01RequestHandler.HTTP01Resource(
            chall=chall, response=response, validation=validation)
        if add:
            self.resources.add(resource)
        response = requests.get('http://localhost:{0}{1}'.format(self.port, chall.path))
        return response.ok and response.text == resource.response.key_authorization

    def test_http01_found(self):
        assert self._test_http01(add=True)

    def test_http01_not_found(self):
        assert not self._test_http01(add=False)


if __name__ == "__main__":
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
