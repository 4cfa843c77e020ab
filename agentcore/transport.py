"""
agentcore Transport Manager
Switches the agent's live transport and manages TLS certificate pinning.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from .config import CoreConfig
from .crypto import cert_der_hash, cert_file_hash
from .errors import ProtocolError
from .protocol import (
    CORE_TRANSPORT_CHANGE,
    CORE_TRANSPORT_GETCERTHASH,
    CORE_TRANSPORT_SETCERTHASH,
    DEFAULT_COMMS_TIMEOUT,
    DEFAULT_SESSION_EXPIRATION,
    DEFAULT_USER_AGENT,
    TLV_TYPE_TRANS_CERT_HASH,
    TLV_TYPE_TRANS_COMMS_TIMEOUT,
    TLV_TYPE_TRANS_PROXY_INFO,
    TLV_TYPE_TRANS_PROXY_PASS,
    TLV_TYPE_TRANS_PROXY_USER,
    TLV_TYPE_TRANS_SESSION_EXP,
    TLV_TYPE_TRANS_TYPE,
    TLV_TYPE_TRANS_UA,
    TLV_TYPE_TRANS_URL,
    TRANSPORT_HTTP,
    TRANSPORT_HTTPS,
    TRANSPORT_TLS,
)
from .session import AgentSession
from .uri import URI_CHECKSUM_CONN, PayloadUUID, generate_uri_uuid

logger = structlog.get_logger()

VALID_TRANSPORTS = {
    "reverse_tcp": TRANSPORT_TLS,
    "reverse_http": TRANSPORT_HTTP,
    "reverse_https": TRANSPORT_HTTPS,
    "bind_tcp": TRANSPORT_TLS,
}


def valid_transport(name: Optional[str]) -> bool:
    return bool(name) and name.lower() in VALID_TRANSPORTS


@dataclass
class TransportOptions:
    transport: Optional[str]
    lport: Optional[int] = None
    lhost: Optional[str] = None
    comms_timeout: Optional[int] = None
    session_exp: Optional[int] = None
    ua: Optional[str] = None
    cert: Optional[str] = None
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None
    proxy_type: Optional[str] = None
    proxy_user: Optional[str] = None
    proxy_pass: Optional[str] = None


@dataclass
class TransportDescriptor:
    """Everything a transport change request will carry."""
    name: str
    kind: int
    url: str
    lhost: Optional[str] = None
    lport: Optional[int] = None
    comms_timeout: Optional[int] = None
    session_exp: Optional[int] = None
    ua: Optional[str] = None
    cert_hash: Optional[bytes] = None
    proxy_info: Optional[str] = None
    proxy_user: Optional[str] = None
    proxy_pass: Optional[str] = None

    @property
    def is_http(self) -> bool:
        return self.kind in (TRANSPORT_HTTP, TRANSPORT_HTTPS)


class TransportManager:
    def __init__(self, session: AgentSession, config: Optional[CoreConfig] = None):
        self.session = session
        self.config = config or CoreConfig()

    def _request_cert_hash(self, request):
        response = self.session.send_and_await(request, self.config.response_timeout)
        if response is None:
            raise ProtocolError(f"No response was received to the {request.method} request")
        if response.result != 0:
            raise ProtocolError(f"The {request.method} request failed with result: {response.result}")
        return response

    def build_descriptor(self, opts: TransportOptions) -> Optional[TransportDescriptor]:
        """Validate options into a descriptor; None when they cannot form a transport."""
        if not valid_transport(opts.transport) or not opts.lport:
            return None

        name = opts.transport.lower()
        lhost = opts.lhost
        if name.startswith("reverse"):
            if not lhost:
                return None
        else:
            # Bind transports listen on the agent side
            lhost = None

        kind = VALID_TRANSPORTS[name]
        scheme = name.split("_")[1]
        url = f"{scheme}://{lhost or ''}:{opts.lport}"
        desc = TransportDescriptor(name=name, kind=kind, url=url, lhost=lhost, lport=opts.lport)

        if desc.is_http:
            uuid = self.session.payload_uuid
            if uuid is None:
                uuid = PayloadUUID(self.session.arch, self.session.os_family)
            desc.url += generate_uri_uuid(URI_CHECKSUM_CONN, uuid) + "/"
            desc.comms_timeout = opts.comms_timeout or DEFAULT_COMMS_TIMEOUT
            desc.session_exp = opts.session_exp or DEFAULT_SESSION_EXPIRATION
            desc.ua = opts.ua or DEFAULT_USER_AGENT

            if kind == TRANSPORT_HTTPS and opts.cert:
                desc.cert_hash = cert_file_hash(opts.cert)

            if opts.proxy_host and opts.proxy_port:
                prefix = "socks=" if opts.proxy_type == "socks" else "http://"
                desc.proxy_info = f"{prefix}{opts.proxy_host}:{opts.proxy_port}"
                desc.proxy_user = opts.proxy_user
                desc.proxy_pass = opts.proxy_pass

        return desc

    def change_transport(self, opts: TransportOptions) -> bool:
        """
        Ask the agent to move to a new transport.

        The current transport may be torn down by this very request, so no
        acknowledgement is awaited.
        """
        desc = self.build_descriptor(opts)
        if desc is None:
            logger.warning("Invalid transport options", transport=opts.transport,
                           lhost=opts.lhost, lport=opts.lport)
            return False

        request = self.session.create_request(CORE_TRANSPORT_CHANGE)

        if desc.is_http:
            request.add_value(TLV_TYPE_TRANS_COMMS_TIMEOUT, desc.comms_timeout)
            request.add_value(TLV_TYPE_TRANS_SESSION_EXP, desc.session_exp)
            request.add_value(TLV_TYPE_TRANS_UA, desc.ua)
            if desc.cert_hash is not None:
                request.add_value(TLV_TYPE_TRANS_CERT_HASH, desc.cert_hash)
            if desc.proxy_info is not None:
                request.add_value(TLV_TYPE_TRANS_PROXY_INFO, desc.proxy_info)
                if desc.proxy_user:
                    request.add_value(TLV_TYPE_TRANS_PROXY_USER, desc.proxy_user)
                if desc.proxy_pass:
                    request.add_value(TLV_TYPE_TRANS_PROXY_PASS, desc.proxy_pass)

        request.add_value(TLV_TYPE_TRANS_TYPE, desc.kind)
        request.add_value(TLV_TYPE_TRANS_URL, desc.url)

        self.session.send(request)
        logger.info("Transport change requested", transport=desc.name, url=desc.url)
        return True

    def _local_cert_der(self) -> Optional[bytes]:
        return getattr(self.session.link, "cert_der", None)

    def enable_cert_pin(self) -> Optional[bytes]:
        """Pin the controller's certificate; returns the pinned hash."""
        if not self.session.transport.is_persistent_tls:
            return None

        cert_path = self.session.transport.cert_path
        if cert_path:
            cert_hash = cert_file_hash(cert_path)
        else:
            der = self._local_cert_der()
            if der is None:
                return None
            cert_hash = cert_der_hash(der)

        request = self.session.create_request(CORE_TRANSPORT_SETCERTHASH)
        request.add_value(TLV_TYPE_TRANS_CERT_HASH, cert_hash)
        self._request_cert_hash(request)
        logger.info("Certificate pinning enabled", cert_hash=cert_hash.hex())
        return cert_hash

    def disable_cert_pin(self) -> Optional[bool]:
        if not self.session.transport.is_persistent_tls:
            return None

        # An empty hash clears the pin
        request = self.session.create_request(CORE_TRANSPORT_SETCERTHASH)
        request.add_value(TLV_TYPE_TRANS_CERT_HASH, b"")
        self._request_cert_hash(request)
        logger.info("Certificate pinning disabled")
        return True

    def get_cert_pin(self) -> Optional[bytes]:
        if not self.session.transport.is_persistent_tls:
            return None

        request = self.session.create_request(CORE_TRANSPORT_GETCERTHASH)
        response = self._request_cert_hash(request)
        # An agent without a pin answers with an empty hash or none at all
        return response.get_value(TLV_TYPE_TRANS_CERT_HASH) or b""
