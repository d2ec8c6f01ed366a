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
RMIology wire layer - JRMP transport, call/return codec and RMI components

Speaks the Java RMI wire protocol (JRMP) directly: stream handshake, call
frames, return frames and just enough of the Java serialization stream format
to deliver payload bytes verbatim and to walk a returned stream structurally.

For authorized security testing only.

Protocol references:
  Java Object Serialization Specification, chapter 6 (stream grammar)
  Java RMI Specification, chapter 10 (RMI wire protocol)
"""

import hashlib
import logging
import os
import re
import socket
import ssl
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Tuple, Any

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 1: Errors & Configuration
# ═══════════════════════════════════════════════════════════════════════════════

class RMIologyError(Exception):
    """Base exception for RMIology."""


class ValidationError(RMIologyError):
    """Missing or conflicting input. Raised before any network I/O."""


class SignatureError(ValidationError):
    """A method signature could not be parsed."""


class ConnectError(RMIologyError):
    """Connection refused, timed out or TLS negotiation failed."""


class ReadTimeout(RMIologyError):
    """No (complete) answer within the read deadline."""


class ConnectionReset(RMIologyError):
    """The peer closed or reset the connection."""


class MalformedFrame(RMIologyError):
    """Protocol data could not be decoded."""


class TruncatedFrame(MalformedFrame):
    """The frame is incomplete; more bytes are needed to decode it."""


# Errors that mean "could not test" rather than a protocol-level answer
TRANSPORT_ERRORS = (ConnectError, ReadTimeout, ConnectionReset)

DEFAULT_CONNECT_TIMEOUT = 3.0
DEFAULT_READ_TIMEOUT = 5.0
DEFAULT_SCAN_CONNECT_TIMEOUT = 1.0
DEFAULT_SCAN_READ_TIMEOUT = 2.0
DEFAULT_THREADS = 5


@dataclass(frozen=True)
class RMIConfig:
    """Run-wide settings, built once by the CLI and passed explicitly."""
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    scan_connect_timeout: float = DEFAULT_SCAN_CONNECT_TIMEOUT
    scan_read_timeout: float = DEFAULT_SCAN_READ_TIMEOUT
    threads: int = DEFAULT_THREADS
    use_ssl: bool = False
    follow: bool = False
    verbose: bool = False
    color: bool = True
    stack_trace: bool = False

    def timeouts(self, scan=False):
        if scan:
            return self.scan_connect_timeout, self.scan_read_timeout
        return self.connect_timeout, self.read_timeout


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 2: Protocol Constants
# ═══════════════════════════════════════════════════════════════════════════════

JRMI_MAGIC = b"JRMI"
JRMI_VERSION = 2

PROTO_STREAM = 0x4b
PROTO_SINGLE_OP = 0x4c
PROTO_MULTIPLEX = 0x4d
PROTO_ACK = 0x4e
PROTO_NACK = 0x4f

MSG_CALL = 0x50
MSG_RETURN = 0x51
MSG_PING = 0x52
MSG_PING_ACK = 0x53
MSG_DGC_ACK = 0x54

RETURN_NORMAL = 0x01
RETURN_EXCEPTION = 0x02

STREAM_MAGIC = 0xaced
STREAM_VERSION = 5
STREAM_HEADER = struct.pack("!HH", STREAM_MAGIC, STREAM_VERSION)

TC_NULL = 0x70
TC_REFERENCE = 0x71
TC_CLASSDESC = 0x72
TC_OBJECT = 0x73
TC_STRING = 0x74
TC_ARRAY = 0x75
TC_CLASS = 0x76
TC_BLOCKDATA = 0x77
TC_ENDBLOCKDATA = 0x78
TC_RESET = 0x79
TC_BLOCKDATALONG = 0x7a
TC_EXCEPTION = 0x7b
TC_LONGSTRING = 0x7c
TC_PROXYCLASSDESC = 0x7d
TC_ENUM = 0x7e

BASE_WIRE_HANDLE = 0x7e0000

SC_WRITE_METHOD = 0x01
SC_SERIALIZABLE = 0x02
SC_EXTERNALIZABLE = 0x04
SC_BLOCK_DATA = 0x08
SC_ENUM = 0x10

PRIMITIVE_FORMATS = {
    "B": "!b", "C": "!H", "D": "!d", "F": "!f",
    "I": "!i", "J": "!q", "S": "!h", "Z": "!?",
}

# ObjID (22) + int opnum (4) + long hash (8)
CALL_HEADER_SIZE = 34
# return type (1) + UID (14)
RETURN_HEADER_SIZE = 15

MAX_DEPTH = 128
MAX_FRAME_SIZE = 0x200000


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 3: Object Identifiers
# ═══════════════════════════════════════════════════════════════════════════════

OBJID_TOSTRING_RE = re.compile(
    r"^\[\s*(?:(-?[0-9a-fA-F]+):(-?[0-9a-fA-F]+):(-?[0-9a-fA-F]+)\s*,\s*)?(-?\d+)\s*\]$"
)
OBJID_HEX_RE = re.compile(r"^(?:0x)?([0-9a-fA-F]{44})$")


@dataclass(frozen=True)
class ObjID:
    """java.rmi.server.ObjID: object number plus the UID of its export space."""
    objnum: int
    unique: int = 0
    time: int = 0
    count: int = 0

    def to_bytes(self):
        return struct.pack("!qiqh", self.objnum, self.unique, self.time, self.count)

    @classmethod
    def from_bytes(cls, data):
        if len(data) < 22:
            raise MalformedFrame("ObjID needs 22 bytes, got %d" % len(data))
        return cls(*struct.unpack("!qiqh", data[:22]))

    @classmethod
    def parse(cls, text):
        """Parse a plain number, the Java toString form or 22 hex-encoded bytes."""
        text = (text or "").strip()
        try:
            if re.fullmatch(r"-?\d+", text):
                objid = cls(int(text))
            elif OBJID_TOSTRING_RE.match(text):
                m = OBJID_TOSTRING_RE.match(text)
                if m.group(1) is None:
                    objid = cls(int(m.group(4)))
                else:
                    objid = cls(int(m.group(4)), int(m.group(1), 16),
                                int(m.group(2), 16), int(m.group(3), 16))
            elif OBJID_HEX_RE.match(text):
                objid = cls.from_bytes(bytes.fromhex(OBJID_HEX_RE.match(text).group(1)))
            else:
                raise ValidationError("Unable to parse ObjID: %s" % text)
            objid.to_bytes()
        except struct.error:
            raise ValidationError("ObjID field out of range: %s" % text)
        return objid

    def is_well_known(self):
        return self.unique == 0 and self.time == 0 and self.count == 0

    def __str__(self):
        if self.is_well_known():
            return "[%d]" % self.objnum
        return "[%x:%x:%x, %d]" % (self.unique, self.time, self.count, self.objnum)


def new_uid():
    """Fresh java.rmi.server.UID bytes (unique, time, count)."""
    unique = struct.unpack("!i", os.urandom(4))[0]
    return struct.pack("!iqh", unique, int(time.time() * 1000), 0)


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 4: Method Signatures
# ═══════════════════════════════════════════════════════════════════════════════

PRIMITIVE_DESCRIPTORS = {
    "boolean": "Z", "byte": "B", "char": "C", "short": "S",
    "int": "I", "long": "J", "float": "F", "double": "D", "void": "V",
}

# Unqualified type names accepted in signatures and wordlists
SHORT_CLASS_NAMES = {
    "String": "java.lang.String",
    "Object": "java.lang.Object",
    "Integer": "java.lang.Integer",
    "Long": "java.lang.Long",
    "Short": "java.lang.Short",
    "Byte": "java.lang.Byte",
    "Boolean": "java.lang.Boolean",
    "Character": "java.lang.Character",
    "Double": "java.lang.Double",
    "Float": "java.lang.Float",
    "Number": "java.lang.Number",
    "Class": "java.lang.Class",
    "Void": "java.lang.Void",
    "Throwable": "java.lang.Throwable",
    "Exception": "java.lang.Exception",
    "StringBuilder": "java.lang.StringBuilder",
    "StringBuffer": "java.lang.StringBuffer",
    "List": "java.util.List",
    "ArrayList": "java.util.ArrayList",
    "LinkedList": "java.util.LinkedList",
    "Map": "java.util.Map",
    "HashMap": "java.util.HashMap",
    "TreeMap": "java.util.TreeMap",
    "Hashtable": "java.util.Hashtable",
    "Set": "java.util.Set",
    "HashSet": "java.util.HashSet",
    "TreeSet": "java.util.TreeSet",
    "Collection": "java.util.Collection",
    "Vector": "java.util.Vector",
    "Properties": "java.util.Properties",
    "Date": "java.util.Date",
    "UUID": "java.util.UUID",
    "Remote": "java.rmi.Remote",
    "MarshalledObject": "java.rmi.MarshalledObject",
    "ObjID": "java.rmi.server.ObjID",
    "UID": "java.rmi.server.UID",
    "VMID": "java.rmi.dgc.VMID",
    "Lease": "java.rmi.dgc.Lease",
    "ActivationID": "java.rmi.activation.ActivationID",
    "File": "java.io.File",
    "Serializable": "java.io.Serializable",
    "BigInteger": "java.math.BigInteger",
    "BigDecimal": "java.math.BigDecimal",
}

SIGNATURE_RE = re.compile(
    r"^\s*(?:(?:public|private|protected|static|final|abstract|synchronized|native|default)\s+)*"
    r"(?P<ret>[\w.$\[\]\s]+?)\s+(?P<name>[\w$]+)\s*\((?P<params>[^()]*)\)"
    r"\s*(?:throws\s+[\w.$,\s]+)?;?\s*$"
)
GENERIC_RE = re.compile(r"<[^<>]*>")


def _strip_generics(text):
    previous = None
    while previous != text:
        previous = text
        text = GENERIC_RE.sub("", text)
    if "<" in text or ">" in text:
        raise SignatureError("Unbalanced generic type in: %s" % text)
    return text


def type_descriptor(type_name):
    """JVM field descriptor for a Java source type (e.g. 'String[]' -> '[Ljava/lang/String;')."""
    type_name = type_name.replace(" ", "").replace("...", "[]")
    dims = type_name.count("[]")
    base = type_name.replace("[]", "")
    if not base or not re.fullmatch(r"[\w.$]+", base):
        raise SignatureError("Invalid type: %s" % type_name)
    if base in PRIMITIVE_DESCRIPTORS:
        if base == "void" and dims:
            raise SignatureError("Invalid type: %s" % type_name)
        desc = PRIMITIVE_DESCRIPTORS[base]
    elif "." in base:
        desc = "L%s;" % base.replace(".", "/")
    elif base in SHORT_CLASS_NAMES:
        desc = "L%s;" % SHORT_CLASS_NAMES[base].replace(".", "/")
    else:
        raise SignatureError("Unknown type '%s' - use the fully qualified class name" % base)
    return "[" * dims + desc


def compute_method_hash(name_and_descriptor):
    """RMI method hash: SHA-1 over writeUTF(name + descriptor), first 8 bytes little-endian."""
    data = name_and_descriptor.encode("utf-8")
    digest = hashlib.sha1(struct.pack("!H", len(data)) + data).digest()
    return struct.unpack("<q", digest[:8])[0]


def _split_params(text):
    params = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        tokens = [t for t in part.split() if t != "final"]
        if len(tokens) == 1:
            type_name = tokens[0]
        else:
            type_name = "".join(tokens[:-1])
            # C-style array declarator: "int values[]"
            type_name += "[]" * tokens[-1].count("[]")
        params.append(type_name)
    return params


@dataclass(frozen=True)
class MethodSignature:
    name: str
    return_type: str
    param_types: Tuple[str, ...]
    descriptor: str

    @classmethod
    def parse(cls, text):
        if not text or not text.strip():
            raise SignatureError("Empty method signature")
        flat = _strip_generics(text)
        m = SIGNATURE_RE.match(flat)
        if not m:
            raise SignatureError("Unable to parse method signature: %s" % text.strip())
        return_type = m.group("ret").replace(" ", "")
        params = tuple(p.replace(" ", "").replace("...", "[]") for p in _split_params(m.group("params")))
        descriptor = "(%s)%s" % ("".join(type_descriptor(p) for p in params),
                                 type_descriptor(return_type))
        return cls(m.group("name"), return_type, params, descriptor)

    @property
    def method_hash(self):
        return compute_method_hash(self.name + self.descriptor)

    @property
    def argument_count(self):
        return len(self.param_types)

    @property
    def returns_object(self):
        ret = self.descriptor[self.descriptor.index(")") + 1:]
        return ret[0] in "L["

    def param_is_primitive(self, index):
        return self.param_types[index] in PRIMITIVE_DESCRIPTORS

    def __str__(self):
        return "%s %s(%s)" % (self.return_type, self.name, ", ".join(self.param_types))


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 5: Component Model
# ═══════════════════════════════════════════════════════════════════════════════

class Component(Enum):
    REGISTRY = "reg"
    DGC = "dgc"
    ACTIVATOR = "act"
    CUSTOM = "custom"

    @classmethod
    def by_short_name(cls, name):
        for comp in (cls.REGISTRY, cls.DGC, cls.ACTIVATOR):
            if comp.value == (name or "").strip().lower():
                return comp
        raise ValidationError("Unsupported RMI component: %s (supported: act, dgc, reg)" % name)


@dataclass(frozen=True)
class ComponentMethod:
    name: str
    opnum: int
    signature: MethodSignature


@dataclass(frozen=True)
class ComponentSpec:
    component: Component
    objid: ObjID
    interface_hash: Optional[int]
    methods: Dict[str, ComponentMethod]

    def method(self, name):
        try:
            return self.methods[name]
        except KeyError:
            raise ValidationError("%s has no method '%s' (available: %s)" % (
                self.component.name, name, ", ".join(self.methods)))

    def dispatch(self, name, hash_dispatch=False):
        """Return (opnum, hash) for a method: legacy stub numbering or method hash."""
        m = self.method(name)
        if hash_dispatch or self.interface_hash is None or m.opnum < 0:
            return -1, m.signature.method_hash
        return m.opnum, self.interface_hash


REGISTRY_OBJID = ObjID(0)
ACTIVATOR_OBJID = ObjID(1)
DGC_OBJID = ObjID(2)

REGISTRY_INTERFACE_HASH = 4905912898345647071
DGC_INTERFACE_HASH = -669196253586618813


def _methods(*entries):
    table = {}
    for opnum, sig in entries:
        parsed = MethodSignature.parse(sig)
        table[parsed.name] = ComponentMethod(parsed.name, opnum, parsed)
    return table


COMPONENTS = {
    Component.REGISTRY: ComponentSpec(Component.REGISTRY, REGISTRY_OBJID, REGISTRY_INTERFACE_HASH, _methods(
        (0, "void bind(java.lang.String name, java.rmi.Remote obj)"),
        (1, "java.lang.String[] list()"),
        (2, "java.rmi.Remote lookup(java.lang.String name)"),
        (3, "void rebind(java.lang.String name, java.rmi.Remote obj)"),
        (4, "void unbind(java.lang.String name)"),
    )),
    Component.DGC: ComponentSpec(Component.DGC, DGC_OBJID, DGC_INTERFACE_HASH, _methods(
        (0, "void clean(java.rmi.server.ObjID[] ids, long seqNum, java.rmi.dgc.VMID vmid, boolean strong)"),
        (1, "java.rmi.dgc.Lease dirty(java.rmi.server.ObjID[] ids, long seqNum, java.rmi.dgc.Lease lease)"),
    )),
    Component.ACTIVATOR: ComponentSpec(Component.ACTIVATOR, ACTIVATOR_OBJID, None, _methods(
        (-1, "java.rmi.MarshalledObject activate(java.rmi.activation.ActivationID id, boolean force)"),
    )),
}


def custom_component(objid, signature):
    """CUSTOM component: operator ObjID plus a single hash-dispatched method."""
    return ComponentSpec(Component.CUSTOM, objid, None,
                         {signature.name: ComponentMethod(signature.name, -1, signature)})


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 6: Serialization Stream Writer
# ═══════════════════════════════════════════════════════════════════════════════

def write_utf(text):
    data = text.encode("utf-8")
    return struct.pack("!H", len(data)) + data


def block_data(data):
    if len(data) <= 0xff:
        return struct.pack("!BB", TC_BLOCKDATA, len(data)) + data
    return struct.pack("!Bi", TC_BLOCKDATALONG, len(data)) + data


def java_null():
    return bytes([TC_NULL])


def java_string(text):
    data = text.encode("utf-8")
    if len(data) > 0xffff:
        return struct.pack("!BQ", TC_LONGSTRING, len(data)) + data
    return bytes([TC_STRING]) + write_utf(text)


def java_primitive(type_code, value):
    """A primitive argument as it appears in a call: block data."""
    return block_data(struct.pack(PRIMITIVE_FORMATS[type_code], value))


def _class_desc(name, suid, flags, fields=(), annotation=None, super_desc=None):
    # RMI streams carry a codebase annotation (String or null) for every class
    out = bytes([TC_CLASSDESC]) + write_utf(name) + struct.pack("!qBH", suid, flags, len(fields))
    for type_code, field_name, class_name in fields:
        out += type_code.encode("ascii") + write_utf(field_name)
        if type_code in "L[":
            out += java_string(class_name)
    out += (java_string(annotation) if annotation is not None else java_null())
    out += bytes([TC_ENDBLOCKDATA])
    out += super_desc if super_desc is not None else java_null()
    return out


def serialized_integer(value=0):
    number = _class_desc("java.lang.Number", -8742448824652078965, SC_SERIALIZABLE)
    desc = _class_desc("java.lang.Integer", 1360826667806852920, SC_SERIALIZABLE,
                       [("I", "value", None)], super_desc=number)
    return bytes([TC_OBJECT]) + desc + struct.pack("!i", value)


def serialized_hashmap():
    """An empty java.util.HashMap (not on any built-in deserialization allow list)."""
    desc = _class_desc("java.util.HashMap", 362498820763181265, SC_SERIALIZABLE | SC_WRITE_METHOD,
                       [("F", "loadFactor", None), ("I", "threshold", None)])
    data = struct.pack("!fi", 0.75, 0)
    data += block_data(struct.pack("!ii", 16, 0)) + bytes([TC_ENDBLOCKDATA])
    return bytes([TC_OBJECT]) + desc + data


def serialized_codebase_object(class_name, codebase):
    """An instance of an arbitrary class annotated with a codebase URL."""
    return bytes([TC_OBJECT]) + _class_desc(class_name, 1, SC_SERIALIZABLE, annotation=codebase)


def serialized_remote_proxy(host, port, objid, interfaces=("java.rmi.Remote",)):
    """A dynamic proxy stub (RemoteObjectInvocationHandler + UnicastRef) for host:port."""
    proxy_super = _class_desc("java.lang.reflect.Proxy", -2222568056686623797, SC_SERIALIZABLE,
                              [("L", "h", "Ljava/lang/reflect/InvocationHandler;")])
    proxy_desc = struct.pack("!Bi", TC_PROXYCLASSDESC, len(interfaces))
    proxy_desc += b"".join(write_utf(i) for i in interfaces)
    proxy_desc += java_null() + bytes([TC_ENDBLOCKDATA]) + proxy_super

    remote_object = _class_desc("java.rmi.server.RemoteObject", -3215090123894869218,
                                SC_SERIALIZABLE | SC_WRITE_METHOD)
    handler_desc = _class_desc("java.rmi.server.RemoteObjectInvocationHandler", 2, SC_SERIALIZABLE,
                               super_desc=remote_object)
    ref = write_utf("UnicastRef") + write_utf(host) + struct.pack("!i", port)
    ref += objid.to_bytes() + b"\x00"
    handler = bytes([TC_OBJECT]) + handler_desc + block_data(ref) + bytes([TC_ENDBLOCKDATA])
    return bytes([TC_OBJECT]) + proxy_desc + handler


def strip_stream_header(payload):
    """Drop a leading ACED0005 so a standalone serialized object can be embedded."""
    if payload[:4] == STREAM_HEADER:
        return payload[4:]
    return payload


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 7: Serialization Stream Reader
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class JavaClassDesc:
    name: str
    suid: int = 0
    flags: int = SC_SERIALIZABLE
    fields: List[Tuple[str, str]] = field(default_factory=list)
    annotations: List[Any] = field(default_factory=list)
    super_desc: Optional["JavaClassDesc"] = None
    interfaces: List[str] = field(default_factory=list)

    @property
    def is_proxy(self):
        return bool(self.interfaces) or self.name == "<proxy>"

    def hierarchy(self):
        chain = []
        desc = self
        while desc is not None and desc not in chain:
            chain.append(desc)
            desc = desc.super_desc
        return list(reversed(chain))

    def class_names(self):
        names = []
        for desc in reversed(self.hierarchy()):
            names.extend(desc.interfaces if desc.is_proxy else [desc.name])
        return names


@dataclass(eq=False)
class JavaObject:
    class_desc: JavaClassDesc
    fields: Dict[str, Any] = field(default_factory=dict)
    annotations: List[Any] = field(default_factory=list)

    @property
    def class_name(self):
        return self.class_desc.name


@dataclass(eq=False)
class JavaArray:
    class_desc: JavaClassDesc
    values: Any = None


@dataclass(eq=False)
class JavaEnum:
    class_desc: JavaClassDesc
    constant: str = ""


class StreamReader:
    """Structural reader for the Java serialization stream grammar.

    Builds a loose object graph (JavaObject / JavaArray / str / bytes) and
    raises MalformedFrame on anything that does not follow the grammar, or
    TruncatedFrame when the input ends early.
    """

    def __init__(self, data, pos=0):
        self.data = data
        self.pos = pos
        self.handles = []
        self.depth = 0

    def take(self, n):
        if n < 0:
            raise MalformedFrame("negative length %d at offset %d" % (n, self.pos))
        if self.pos + n > len(self.data):
            raise TruncatedFrame("need %d bytes at offset %d, have %d" % (
                n, self.pos, len(self.data) - self.pos))
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def unpack(self, fmt):
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]

    def read_byte(self):
        return self.unpack("!B")

    def peek(self):
        if self.pos >= len(self.data):
            raise TruncatedFrame("stream ends at offset %d" % self.pos)
        return self.data[self.pos]

    def read_utf(self):
        return self.take(self.unpack("!H")).decode("utf-8", errors="replace")

    def stream_header(self):
        magic, version = struct.unpack("!HH", self.take(4))
        if magic != STREAM_MAGIC or version != STREAM_VERSION:
            raise MalformedFrame("bad stream header %04x%04x" % (magic, version))

    def _new_handle(self, obj):
        self.handles.append(obj)

    def _reference(self):
        index = self.unpack("!i") - BASE_WIRE_HANDLE
        if index < 0 or index >= len(self.handles):
            raise MalformedFrame("invalid handle reference 0x%x" % (index + BASE_WIRE_HANDLE))
        return self.handles[index]

    def read_content(self):
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise MalformedFrame("object graph nested deeper than %d" % MAX_DEPTH)
        try:
            return self._read_content()
        finally:
            self.depth -= 1

    def _read_content(self):
        tc = self.read_byte()
        if tc == TC_NULL:
            return None
        if tc == TC_REFERENCE:
            return self._reference()
        if tc in (TC_CLASSDESC, TC_PROXYCLASSDESC):
            self.pos -= 1
            return self.read_class_desc()
        if tc == TC_OBJECT:
            return self._read_object()
        if tc == TC_STRING:
            text = self.read_utf()
            self._new_handle(text)
            return text
        if tc == TC_LONGSTRING:
            text = self.take(self.unpack("!Q")).decode("utf-8", errors="replace")
            self._new_handle(text)
            return text
        if tc == TC_ARRAY:
            return self._read_array()
        if tc == TC_CLASS:
            desc = self.read_class_desc()
            self._new_handle(desc)
            return desc
        if tc == TC_ENUM:
            desc = self.read_class_desc()
            enum = JavaEnum(desc)
            self._new_handle(enum)
            constant = self.read_content()
            if not isinstance(constant, str):
                raise MalformedFrame("enum constant is not a string")
            enum.constant = constant
            return enum
        if tc == TC_BLOCKDATA:
            return bytes(self.take(self.read_byte()))
        if tc == TC_BLOCKDATALONG:
            return bytes(self.take(self.unpack("!i")))
        if tc == TC_RESET:
            self.handles = []
            return self.read_content()
        if tc == TC_EXCEPTION:
            raise MalformedFrame("writer aborted the stream (TC_EXCEPTION) at offset %d" % (self.pos - 1))
        raise MalformedFrame("unexpected type code 0x%02x at offset %d" % (tc, self.pos - 1))

    def read_class_desc(self):
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise MalformedFrame("class hierarchy nested deeper than %d" % MAX_DEPTH)
        try:
            return self._read_class_desc()
        finally:
            self.depth -= 1

    def _read_class_desc(self):
        tc = self.read_byte()
        if tc == TC_NULL:
            return None
        if tc == TC_REFERENCE:
            desc = self._reference()
            if not isinstance(desc, JavaClassDesc):
                raise MalformedFrame("handle does not reference a class descriptor")
            return desc
        if tc == TC_CLASSDESC:
            desc = JavaClassDesc(self.read_utf(), self.unpack("!q"))
            self._new_handle(desc)
            desc.flags = self.read_byte()
            for _ in range(self.unpack("!H")):
                type_code = chr(self.read_byte())
                if type_code not in "BCDFIJSZL[":
                    raise MalformedFrame("invalid field type code %r in %s" % (type_code, desc.name))
                field_name = self.read_utf()
                if type_code in "L[":
                    class_name = self.read_content()
                    if not isinstance(class_name, str):
                        raise MalformedFrame("field type of %s.%s is not a string" % (desc.name, field_name))
                desc.fields.append((type_code, field_name))
            desc.annotations = self._read_annotations()
            desc.super_desc = self.read_class_desc()
            return desc
        if tc == TC_PROXYCLASSDESC:
            count = self.unpack("!i")
            if count < 0 or count > 0xffff:
                raise MalformedFrame("invalid proxy interface count %d" % count)
            desc = JavaClassDesc("<proxy>")
            self._new_handle(desc)
            desc.interfaces = [self.read_utf() for _ in range(count)]
            desc.annotations = self._read_annotations()
            desc.super_desc = self.read_class_desc()
            return desc
        raise MalformedFrame("unexpected type code 0x%02x for a class descriptor" % tc)

    def _read_annotations(self):
        items = []
        while self.peek() != TC_ENDBLOCKDATA:
            items.append(self.read_content())
        self.pos += 1
        return items

    def _read_value(self, type_code):
        if type_code in "L[":
            return self.read_content()
        return self.unpack(PRIMITIVE_FORMATS[type_code])

    def _read_object(self):
        desc = self.read_class_desc()
        if desc is None:
            raise MalformedFrame("object without class descriptor")
        obj = JavaObject(desc)
        self._new_handle(obj)
        for cls in desc.hierarchy():
            if cls.flags & SC_EXTERNALIZABLE:
                if not cls.flags & SC_BLOCK_DATA:
                    raise MalformedFrame("externalizable %s without block data mode" % cls.name)
                obj.annotations.extend(self._read_annotations())
                continue
            for type_code, field_name in cls.fields:
                obj.fields[field_name] = self._read_value(type_code)
            if cls.flags & SC_WRITE_METHOD:
                obj.annotations.extend(self._read_annotations())
        return obj

    def _read_array(self):
        desc = self.read_class_desc()
        if desc is None or not desc.name.startswith("["):
            raise MalformedFrame("array without array class descriptor")
        array = JavaArray(desc)
        self._new_handle(array)
        size = self.unpack("!i")
        if size < 0:
            raise MalformedFrame("negative array size %d" % size)
        element = desc.name[1:2]
        if element == "B":
            array.values = bytes(self.take(size))
        elif element in PRIMITIVE_FORMATS:
            fmt = PRIMITIVE_FORMATS[element]
            raw = self.take(size * struct.calcsize(fmt))
            array.values = [v[0] for v in struct.iter_unpack(fmt, raw)]
        elif element and element in "L[":
            array.values = [self.read_content() for _ in range(size)]
        else:
            raise MalformedFrame("invalid array class %s" % desc.name)
        return array


# Fields that link an exception to its cause, checked in this order
CAUSE_FIELDS = ("detail", "cause", "ex", "target", "undeclaredThrowable")


def exception_chain(obj):
    """[(class name, message), ...] from the outermost exception inwards."""
    chain = []
    seen = set()
    while isinstance(obj, JavaObject) and id(obj) not in seen:
        seen.add(id(obj))
        message = obj.fields.get("detailMessage")
        chain.append((obj.class_name, message if isinstance(message, str) else None))
        nxt = None
        for name in CAUSE_FIELDS:
            candidate = obj.fields.get(name)
            if isinstance(candidate, JavaObject) and candidate is not obj:
                nxt = candidate
                break
        obj = nxt
    return chain


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 8: Call / Return Codec
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CallFrame:
    objid: ObjID
    opnum: int
    method_hash: int
    args: bytes = b""


class ReturnKind(Enum):
    NORMAL = "normal"
    EXCEPTION = "exception"


@dataclass
class ReturnFrame:
    kind: ReturnKind
    uid: bytes = b""
    value: Any = None
    primitive: bytes = b""
    chain: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    size: int = 0

    @property
    def is_exception(self):
        return self.kind is ReturnKind.EXCEPTION

    @property
    def exception_class(self):
        return self.chain[0][0] if self.chain else None

    @property
    def root_cause(self):
        return self.chain[-1] if self.chain else (None, None)

    def describe(self):
        if not self.is_exception:
            return "normal return"
        parts = []
        for class_name, message in self.chain:
            parts.append("%s: %s" % (class_name, message) if message else class_name)
        return " <- ".join(parts)

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "exception": [{"class": c, "message": m} for c, m in self.chain],
        }


def encode_call(objid, opnum, method_hash, args=b""):
    header = objid.to_bytes() + struct.pack("!iq", opnum, method_hash)
    return bytes([MSG_CALL]) + STREAM_HEADER + block_data(header) + args


def decode_call(data):
    """Parse a Call message (server side). Arguments are returned undecoded."""
    if not data:
        raise TruncatedFrame("empty call frame")
    if data[0] != MSG_CALL:
        raise MalformedFrame("expected Call message (0x50), got 0x%02x" % data[0])
    reader = StreamReader(data, 1)
    reader.stream_header()
    if reader.read_byte() != TC_BLOCKDATA:
        raise MalformedFrame("call header is not block data")
    block = reader.take(reader.read_byte())
    if len(block) < CALL_HEADER_SIZE:
        raise MalformedFrame("call header too short (%d bytes)" % len(block))
    opnum, method_hash = struct.unpack("!iq", block[22:CALL_HEADER_SIZE])
    args = block[CALL_HEADER_SIZE:]
    args = (block_data(args) if args else b"") + data[reader.pos:]
    return CallFrame(ObjID.from_bytes(block), opnum, method_hash, bytes(args))


def encode_return(value=b"", exceptional=False, uid=None):
    header = bytes([RETURN_EXCEPTION if exceptional else RETURN_NORMAL]) + (uid or new_uid())
    return bytes([MSG_RETURN]) + STREAM_HEADER + block_data(header) + value


def decode_return(data, expect_value=True):
    """Decode one Return message.

    expect_value tells whether a normal return carries an object (the caller
    knows the method's return type). Primitive return values travel inside the
    header block and are exposed as ReturnFrame.primitive.
    """
    if not data:
        raise TruncatedFrame("empty return frame")
    if data[0] != MSG_RETURN:
        raise MalformedFrame("expected Return message (0x51), got 0x%02x" % data[0])
    reader = StreamReader(data, 1)
    reader.stream_header()
    if reader.read_byte() != TC_BLOCKDATA:
        raise MalformedFrame("return header is not block data")
    block = reader.take(reader.read_byte())
    if len(block) < RETURN_HEADER_SIZE:
        raise MalformedFrame("return header too short (%d bytes)" % len(block))

    if block[0] == RETURN_NORMAL:
        frame = ReturnFrame(ReturnKind.NORMAL, uid=bytes(block[1:RETURN_HEADER_SIZE]))
        frame.primitive = bytes(block[RETURN_HEADER_SIZE:])
        if expect_value and not frame.primitive:
            frame.value = reader.read_content()
    elif block[0] == RETURN_EXCEPTION:
        if len(block) != RETURN_HEADER_SIZE:
            raise MalformedFrame("exceptional return with %d header bytes" % len(block))
        frame = ReturnFrame(ReturnKind.EXCEPTION, uid=bytes(block[1:]))
        frame.value = reader.read_content()
        if not isinstance(frame.value, JavaObject):
            raise MalformedFrame("exceptional return does not carry an exception object")
        frame.chain = exception_chain(frame.value)
    else:
        raise MalformedFrame("unknown return type 0x%02x" % block[0])

    if reader.pos != len(data):
        raise MalformedFrame("%d trailing bytes after return frame" % (len(data) - reader.pos))
    frame.size = reader.pos
    return frame


# Known exception shapes: marker -> [(exception class, message fragment or None)]
EXCEPTION_MARKERS = {
    "no_such_method": [
        ("java.rmi.UnmarshalException", "unrecognized method hash"),
        ("java.rmi.UnmarshalException", "invalid method number"),
        ("java.rmi.server.SkeletonMismatchException", None),
    ],
    "skeleton_mismatch": [
        ("java.rmi.UnmarshalException", "skeleton class not found"),
        ("java.rmi.server.SkeletonNotFoundException", None),
    ],
    "no_such_object": [("java.rmi.NoSuchObjectException", None)],
    "filter_rejected": [("java.io.InvalidClassException", "filter status: REJECTED")],
    "access_denied": [("java.rmi.AccessException", None)],
    "not_bound": [("java.rmi.NotBoundException", None)],
    "already_bound": [("java.rmi.AlreadyBoundException", None)],
    "class_cast": [("java.lang.ClassCastException", None)],
    "class_not_found": [("java.lang.ClassNotFoundException", None)],
    "codebase_disabled": [("java.lang.ClassNotFoundException", "no security manager")],
    "malformed_url": [("java.net.MalformedURLException", None)],
    "stream_corrupted": [("java.io.StreamCorruptedException", None)],
    "unmarshal_args": [("java.rmi.UnmarshalException", "error unmarshalling arguments")],
    "eof": [("java.io.EOFException", None)],
    "optional_data": [("java.io.OptionalDataException", None)],
}


def classify_return(frame):
    """Set of EXCEPTION_MARKERS names matching anywhere in the exception chain."""
    markers = set()
    if not frame.is_exception:
        return markers
    for marker, patterns in EXCEPTION_MARKERS.items():
        for class_name, fragment in patterns:
            if any(exc == class_name and (fragment is None or (msg and fragment in msg))
                   for exc, msg in frame.chain):
                markers.add(marker)
                break
    return markers


def read_string_array(frame):
    value = frame.value
    if not isinstance(value, JavaArray) or value.class_desc.name != "[Ljava.lang.String;":
        raise MalformedFrame("expected a String[] return value")
    return [v for v in value.values if isinstance(v, str)]


@dataclass(frozen=True)
class RemoteRef:
    host: str
    port: int
    objid: ObjID
    class_names: Tuple[str, ...] = ()
    socket_factory: Optional[str] = None

    def to_dict(self):
        return {
            "host": self.host,
            "port": self.port,
            "objid": str(self.objid),
            "classes": list(self.class_names),
            "socket_factory": self.socket_factory,
        }


def _iter_graph(root):
    stack = [root]
    seen = set()
    while stack:
        item = stack.pop()
        if id(item) in seen:
            continue
        seen.add(id(item))
        if isinstance(item, JavaObject):
            yield item
            stack.extend(reversed(list(item.fields.values()) + item.annotations))
        elif isinstance(item, JavaArray) and isinstance(item.values, list):
            stack.extend(reversed(item.values))


def _parse_live_ref(obj):
    parts = [a for a in obj.annotations if isinstance(a, bytes)]
    factories = [a for a in obj.annotations if isinstance(a, JavaObject)]
    if not parts:
        return None
    reader = StreamReader(b"".join(parts))
    try:
        ref_type = reader.read_utf()
        if ref_type not in ("UnicastRef", "UnicastRef2"):
            return None
        factory = None
        if ref_type == "UnicastRef2" and reader.read_byte() == 1:
            factory = factories[0].class_name if factories else "unknown"
        host = reader.read_utf()
        port = reader.unpack("!i")
        objid = ObjID.from_bytes(reader.take(22))
    except MalformedFrame:
        return None
    return host, port, objid, factory


def extract_remote_ref(value):
    """Endpoint and ObjID of a remote stub returned by lookup, or None."""
    if not isinstance(value, JavaObject):
        return None
    class_names = tuple(n for n in value.class_desc.class_names()
                        if n not in ("java.lang.reflect.Proxy", "java.rmi.server.RemoteObject",
                                     "java.rmi.server.RemoteStub"))
    for obj in _iter_graph(value):
        parsed = _parse_live_ref(obj)
        if parsed:
            host, port, objid, factory = parsed
            return RemoteRef(host, port, objid, class_names, factory)
    return None


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 9: Transport
# ═══════════════════════════════════════════════════════════════════════════════

class RMIConnection:
    """A single JRMP stream connection.

    Supports the context manager protocol; the socket is closed on every exit
    path. Timeouts are per instance: scans use short ones, interactive calls
    longer ones.

    Example:
        with RMIConnection("10.0.0.5", 1099, 3.0, 5.0) as conn:
            frame = conn.call(REGISTRY_OBJID, 1, REGISTRY_INTERFACE_HASH)
    """

    def __init__(self, host, port, connect_timeout=DEFAULT_CONNECT_TIMEOUT,
                 read_timeout=DEFAULT_READ_TIMEOUT, use_ssl=False):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.use_ssl = use_ssl
        self.sock = None
        self.server_view = None

    @classmethod
    def from_config(cls, host, port, config, scan=False):
        connect_timeout, read_timeout = config.timeouts(scan)
        return cls(host, port, connect_timeout, read_timeout, config.use_ssl)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def open(self, handshake=True):
        if self.sock is not None:
            return
        label = "%s:%d" % (self.host, self.port)
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except socket.timeout as e:
            raise ConnectError("connection to %s timed out" % label) from e
        except OSError as e:
            raise ConnectError("connection to %s failed: %s" % (label, e.strerror or e)) from e

        if self.use_ssl:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            try:
                sock = ctx.wrap_socket(sock, server_hostname=self.host)
            except (ssl.SSLError, OSError) as e:
                sock.close()
                raise ConnectError("TLS negotiation with %s failed: %s" % (label, e)) from e

        sock.settimeout(self.read_timeout)
        self.sock = sock
        logger.debug("connected to %s (tls=%s)", label, self.use_ssl)
        if handshake:
            try:
                self.handshake()
            except Exception:
                self.close()
                raise

    def close(self):
        if self.sock is None:
            return
        try:
            self.sock.close()
        except OSError:
            pass
        self.sock = None

    def handshake(self):
        """StreamProtocol handshake: JRMI header, ProtocolAck, client endpoint."""
        self.write_frame(JRMI_MAGIC + struct.pack("!HB", JRMI_VERSION, PROTO_STREAM))
        deadline = time.monotonic() + self.read_timeout
        ack = self._recv_exact(1, deadline)[0]
        if ack == PROTO_NACK:
            raise MalformedFrame("%s:%d rejected the stream protocol (ProtocolNack)" % (self.host, self.port))
        if ack != PROTO_ACK:
            raise MalformedFrame("%s:%d answered 0x%02x instead of ProtocolAck" % (self.host, self.port, ack))
        length = struct.unpack("!H", self._recv_exact(2, deadline))[0]
        host = self._recv_exact(length, deadline).decode("utf-8", errors="replace")
        port = struct.unpack("!i", self._recv_exact(4, deadline))[0]
        self.server_view = (host, port)
        self.write_frame(write_utf(host) + struct.pack("!i", 0))

    def write_frame(self, data):
        try:
            self.sock.sendall(data)
        except socket.timeout as e:
            raise ReadTimeout("write to %s:%d timed out" % (self.host, self.port)) from e
        except OSError as e:
            raise ConnectionReset("write to %s:%d failed: %s" % (self.host, self.port, e)) from e

    def _recv(self, deadline):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReadTimeout("read from %s:%d timed out" % (self.host, self.port))
        try:
            self.sock.settimeout(remaining)
            return self.sock.recv(65536)
        except socket.timeout as e:
            raise ReadTimeout("read from %s:%d timed out" % (self.host, self.port)) from e
        except OSError as e:
            raise ConnectionReset("read from %s:%d failed: %s" % (self.host, self.port, e)) from e

    def _recv_exact(self, n, deadline):
        data = b""
        while len(data) < n:
            remaining = deadline - time.monotonic()
            try:
                self.sock.settimeout(max(remaining, 0.001))
                chunk = self.sock.recv(n - len(data))
            except socket.timeout as e:
                raise ReadTimeout("read from %s:%d timed out" % (self.host, self.port)) from e
            except OSError as e:
                raise ConnectionReset("read from %s:%d failed: %s" % (self.host, self.port, e)) from e
            if not chunk:
                raise ConnectionReset("%s:%d closed the connection" % (self.host, self.port))
            data += chunk
        return data

    def read_frame(self, decoder, read_timeout=None):
        """Read until decoder(buffer) succeeds; TruncatedFrame means keep reading."""
        deadline = time.monotonic() + (read_timeout or self.read_timeout)
        buf = b""
        while True:
            chunk = self._recv(deadline)
            if not chunk:
                if buf:
                    raise MalformedFrame("%s:%d closed the connection mid-frame (%d bytes)" % (
                        self.host, self.port, len(buf)))
                raise ConnectionReset("%s:%d closed the connection" % (self.host, self.port))
            buf += chunk
            if len(buf) > MAX_FRAME_SIZE:
                raise MalformedFrame("frame exceeds %d bytes" % MAX_FRAME_SIZE)
            try:
                return decoder(buf)
            except TruncatedFrame:
                continue

    def read_return(self, expect_value=True, read_timeout=None):
        return self.read_frame(lambda buf: decode_return(buf, expect_value), read_timeout)

    def call(self, objid, opnum, method_hash, args=b"", expect_value=True):
        logger.debug("call %s:%d objid=%s op=%d hash=%d args=%d bytes",
                     self.host, self.port, objid, opnum, method_hash, len(args))
        self.write_frame(encode_call(objid, opnum, method_hash, args))
        return self.read_return(expect_value)

    def ping(self):
        self.write_frame(bytes([MSG_PING]))
        answer = self._recv_exact(1, time.monotonic() + self.read_timeout)[0]
        if answer != MSG_PING_ACK:
            raise MalformedFrame("unexpected ping answer 0x%02x" % answer)
        return True


def call_endpoint(host, port, config, objid, opnum, method_hash, args=b"",
                  expect_value=True, scan=False):
    """Open a connection, perform one call, close."""
    with RMIConnection.from_config(host, port, config, scan=scan) as conn:
        return conn.call(objid, opnum, method_hash, args, expect_value)
