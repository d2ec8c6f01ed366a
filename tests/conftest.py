#!/usr/bin/env python3
#
# MIT License
#
# Copyright (c) 2026 Joris van de Vis
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
#
"""
Shared fixtures: a threaded stub JRMP endpoint and helpers that serialize
the exception and value objects a real RMI server would send back.
"""

import os
import socket
import struct
import sys
import threading
import time

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from RMIology_wire import (
    RMIConfig, ObjID, StreamReader, JavaObject, COMPONENTS, Component,
    JRMI_MAGIC, PROTO_STREAM, PROTO_ACK, MSG_CALL, MSG_PING, MSG_PING_ACK,
    TC_ARRAY, TC_ENDBLOCKDATA, TC_OBJECT, SC_SERIALIZABLE, CALL_HEADER_SIZE,
    MalformedFrame, _class_desc, write_utf, java_null, java_string,
    decode_call, encode_return, serialized_remote_proxy,
)


# ═══════════════════════════════════════════════════════════════════════════════
# Serialization helpers
# ═══════════════════════════════════════════════════════════════════════════════

def exception_object(class_name, message=None, cause=None):
    """Serialized Throwable subclass with the cause / detailMessage fields."""
    desc = _class_desc(class_name, 1, SC_SERIALIZABLE, [
        ("L", "cause", "Ljava/lang/Throwable;"),
        ("L", "detailMessage", "Ljava/lang/String;"),
    ])
    data = cause if cause is not None else java_null()
    data += java_string(message) if message is not None else java_null()
    return bytes([TC_OBJECT]) + desc + data


def exception_return(*chain):
    """Exceptional Return for a chain of (class, message) pairs, outermost first."""
    value = None
    for class_name, message in reversed(chain):
        value = exception_object(class_name, message, value)
    return encode_return(value, exceptional=True)


def string_array(items):
    desc = _class_desc("[Ljava.lang.String;", -5921575005990323385, SC_SERIALIZABLE)
    return bytes([TC_ARRAY]) + desc + struct.pack("!i", len(items)) + b"".join(
        java_string(i) for i in items)


def unmarshal_failure(cause_class, cause_message=None):
    return exception_return(("java.rmi.UnmarshalException", "error unmarshalling arguments; nested exception is"),
                            (cause_class, cause_message))


NO_SUCH_METHOD = (("java.rmi.UnmarshalException", "unrecognized method hash: method not supported by remote object"),)
NO_SUCH_OBJECT = (("java.rmi.NoSuchObjectException", "no such object in table"),)


def first_argument(call):
    return StreamReader(call.args).read_content() if call.args else None


def free_port():
    """A local port nothing listens on (connections are refused)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ═══════════════════════════════════════════════════════════════════════════════
# Stub endpoint
# ═══════════════════════════════════════════════════════════════════════════════

class _Buffered:
    def __init__(self, conn):
        self.conn = conn
        self.buf = b""

    def read(self, n):
        while len(self.buf) < n:
            chunk = self.conn.recv(65536)
            if not chunk:
                raise EOFError("peer closed")
            self.buf += chunk
        data, self.buf = self.buf[:n], self.buf[n:]
        return data

    def drain(self, quiet=0.05):
        """Whatever else arrives until the peer goes quiet."""
        self.conn.settimeout(quiet)
        try:
            while True:
                chunk = self.conn.recv(65536)
                if not chunk:
                    break
                self.buf += chunk
        except socket.timeout:
            pass
        finally:
            self.conn.settimeout(None)
        data, self.buf = self.buf, b""
        return data


class StubEndpoint:
    """Threaded JRMP server; handler(CallFrame) returns Return bytes, a list of
    chunks sent with a pause in between, or None to drop the connection."""

    def __init__(self, handler, speak_jrmp=True):
        self.handler = handler
        self.speak_jrmp = speak_jrmp
        self.calls = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self.server = socket.create_server(("127.0.0.1", 0))
        self.server.settimeout(0.1)
        self.host, self.port = self.server.getsockname()[:2]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._thread.join(timeout=2)
        self.server.close()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._connection, args=(conn,), daemon=True).start()

    def _connection(self, conn):
        with conn:
            try:
                self._session(conn)
            except (EOFError, OSError, MalformedFrame):
                pass

    def _session(self, conn):
        stream = _Buffered(conn)
        header = stream.read(7)
        if header[:4] != JRMI_MAGIC:
            return
        if not self.speak_jrmp:
            conn.sendall(b"HTTP/1.1 400 Bad Request\r\n\r\n")
            return
        if header[6] == PROTO_STREAM:
            peer_host, peer_port = conn.getpeername()[:2]
            conn.sendall(bytes([PROTO_ACK]) + write_utf(peer_host) + struct.pack("!i", peer_port))
            length = struct.unpack("!H", stream.read(2))[0]
            stream.read(length + 4)

        while True:
            op = stream.read(1)[0]
            if op == MSG_PING:
                conn.sendall(bytes([MSG_PING_ACK]))
                continue
            if op != MSG_CALL:
                return
            data = bytes([op]) + stream.read(4 + 2 + CALL_HEADER_SIZE) + stream.drain()
            call = decode_call(data)
            with self._lock:
                self.calls.append(call)
            answer = self.handler(call)
            if answer is None:
                return
            chunks = answer if isinstance(answer, list) else [answer]
            for index, chunk in enumerate(chunks):
                if index:
                    time.sleep(0.05)
                conn.sendall(chunk)


class RegistryStub:
    """Handler imitating a registry with DGC, configurable per vulnerability."""

    def __init__(self, bound=None, localhost_bypass=True, deserialization_filter=True,
                 codebase=False, outdated=False, activator=False, objects=None,
                 filter_answer=None):
        self.bound = dict(bound or {})
        self.localhost_bypass = localhost_bypass
        self.deserialization_filter = deserialization_filter
        self.codebase = codebase
        self.outdated = outdated
        self.activator = activator
        self.objects = dict(objects or {})
        self.filter_answer = filter_answer

    def __call__(self, call):
        if call.objid == ObjID(0):
            return self.registry(call)
        if call.objid == ObjID(2):
            return self.dgc(call)
        if call.objid == ObjID(1) and self.activator:
            return exception_return(("java.rmi.activation.UnknownObjectException", "object unknown"))
        if call.objid in self.objects:
            methods = self.objects[call.objid]
            if call.opnum != -1 or call.method_hash not in methods:
                return exception_return(*NO_SUCH_METHOD)
            answer = methods[call.method_hash]
            return answer(call) if callable(answer) else answer
        return exception_return(*NO_SUCH_OBJECT)

    def registry(self, call):
        registry = COMPONENTS[Component.REGISTRY]
        if call.opnum == -1:
            names = {m.signature.method_hash: name for name, m in registry.methods.items()}
            if call.method_hash not in names or not self.localhost_bypass:
                return exception_return(*NO_SUCH_METHOD)
            method = names[call.method_hash]
            name = first_argument(call)
            if method == "unbind":
                if name not in self.bound:
                    return exception_return(("java.rmi.NotBoundException", name))
                del self.bound[name]
                return encode_return()
            if method in ("bind", "rebind"):
                if method == "bind" and name in self.bound:
                    return exception_return(("java.rmi.AlreadyBoundException", name))
                self.bound[name] = None
                return encode_return()
            return exception_return(*NO_SUCH_METHOD)

        if call.method_hash != registry.interface_hash:
            return exception_return(("java.rmi.server.SkeletonMismatchException", "interface hash mismatch"))
        if call.opnum == 1:
            return encode_return(string_array(sorted(self.bound)))
        if call.opnum == 2:
            try:
                name = first_argument(call)
            except MalformedFrame:
                return unmarshal_failure("java.io.StreamCorruptedException", "invalid type code")
            if isinstance(name, JavaObject):
                if self.outdated:
                    return unmarshal_failure("java.lang.ClassCastException",
                                             "java.lang.Integer cannot be cast to java.lang.String")
                return unmarshal_failure("java.io.StreamCorruptedException", "invalid type code: 73")
            if name not in self.bound or self.bound[name] is None:
                return exception_return(("java.rmi.NotBoundException", str(name)))
            host, port, objid, interfaces = self.bound[name]
            return encode_return(serialized_remote_proxy(host, port, objid, interfaces))
        if call.opnum in (0, 3, 4):
            return exception_return(
                ("java.rmi.ServerException", "RemoteException occurred in server thread; nested exception is"),
                ("java.rmi.AccessException", "Registry.%s disallowed; origin /10.0.0.1 is non-local host" % (
                    {0: "bind", 3: "rebind", 4: "unbind"}[call.opnum])))
        return exception_return(("java.rmi.UnmarshalException", "invalid method number"))

    def dgc(self, call):
        if call.opnum not in (0, 1):
            return exception_return(("java.rmi.UnmarshalException", "invalid method number"))
        if self.filter_answer is not None:
            return self.filter_answer
        obj = first_argument(call)
        class_name = obj.class_name if isinstance(obj, JavaObject) else None
        if self.deserialization_filter and class_name != "[Ljava.rmi.server.ObjID;":
            return unmarshal_failure("java.io.InvalidClassException", "filter status: REJECTED")
        if class_name == "java.util.HashMap":
            return unmarshal_failure("java.lang.ClassCastException",
                                     "java.util.HashMap cannot be cast to [Ljava.rmi.server.ObjID;")
        if self.codebase:
            return unmarshal_failure("java.net.MalformedURLException", "no protocol: InvalidURL")
        return unmarshal_failure("java.lang.ClassNotFoundException",
                                 "%s (no security manager: RMI class loader disabled)" % class_name)


# ═══════════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def stub_server():
    """Factory fixture: stub_server(handler, speak_jrmp=True) -> StubEndpoint."""
    endpoints = []

    def start(handler, speak_jrmp=True):
        endpoint = StubEndpoint(handler, speak_jrmp)
        endpoints.append(endpoint)
        return endpoint

    yield start
    for endpoint in endpoints:
        endpoint.stop()


@pytest.fixture
def dead_ports():
    """Factory fixture: n distinct local ports that refuse connections."""
    sockets = []

    def reserve(n):
        ports = []
        for _ in range(n):
            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            s.bind(("127.0.0.1", 0))
            sockets.append(s)
            ports.append(s.getsockname()[1])
        return ports

    yield reserve
    for s in sockets:
        s.close()


@pytest.fixture
def config():
    return RMIConfig(connect_timeout=2.0, read_timeout=3.0,
                     scan_connect_timeout=1.0, scan_read_timeout=2.0, threads=4)


@pytest.fixture
def no_network(monkeypatch):
    """Fail the test if anything tries to open a connection."""
    import RMIology_wire

    def refuse(*args, **kwargs):
        raise AssertionError("unexpected network access: %r" % (args,))

    monkeypatch.setattr(RMIology_wire.socket, "create_connection", refuse)
