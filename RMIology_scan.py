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
RMIology scan layer - vulnerability checks, port scanner and method guesser

Every check opens its own connection, issues one (or a few) crafted calls and
turns the decoded return frame into a verdict. The scanner runs
(port x check) units on a bounded thread pool; the guesser runs one unit per
distinct method hash. Both fold results into a lock-guarded report whose row
order is fixed up front, so output never depends on completion order.

For authorized security testing only.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Tuple

from RMIology_wire import (
    TRANSPORT_ERRORS, MalformedFrame, SignatureError, ValidationError,
    RMIConnection, ObjID, MethodSignature, Component, COMPONENTS,
    call_endpoint, classify_return, encode_call, read_string_array,
    extract_remote_ref, JavaObject, block_data, java_null, java_string,
    java_primitive, serialized_hashmap, serialized_integer,
    serialized_codebase_object,
)
from RMIology_ssrf import SSRFStyle, wrap, decode_response

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 1: Verdicts & Scan Actions
# ═══════════════════════════════════════════════════════════════════════════════

class Verdict(str, Enum):
    VULNERABLE = "vulnerable"
    NOT_VULNERABLE = "not-vulnerable"
    INCONCLUSIVE = "inconclusive"
    ERROR = "error"


class ScanAction(Enum):
    SSRF = "ssrf"
    LOCALHOST_BYPASS = "localhost-bypass"
    FILTER = "filter"
    CODEBASE = "codebase"
    OUTDATED = "outdated"
    JMX = "jmx"
    ACTIVATOR = "activator"

    @classmethod
    def parse(cls, names):
        """Parse action keywords; an empty selection means every action."""
        if not names:
            return list(cls)
        actions = []
        for name in names:
            key = name.strip().lower().replace("_", "-")
            key = SCAN_ACTION_ALIASES.get(key, key)
            try:
                action = cls(key)
            except ValueError:
                raise ValidationError("Unknown scan action '%s' (available: %s)" % (
                    name, ", ".join(a.value for a in cls)))
            if action not in actions:
                actions.append(action)
        return actions


SCAN_ACTION_ALIASES = {
    "localhost": "localhost-bypass",
    "bypass": "localhost-bypass",
    "filter-bypass": "filter",
    "deserialization-filter": "filter",
    "security-manager": "codebase",
    "activation": "activator",
}

# Ports tried when the operator passes "-" as the port specification
DEFAULT_RMI_PORTS = [
    1090, 1098, 1099, 1100, 1101, 1199, 2099, 4444, 4445, 4446,
    8901, 8902, 8903, 9010, 9011, 9999, 10999, 11099,
]


def parse_ports(spec):
    """Port specification: "1099", "1090-1099,9010" or "-" for DEFAULT_RMI_PORTS."""
    ports = []
    for part in (spec or "").split(","):
        part = part.strip()
        if not part:
            continue
        if part == "-":
            ports.extend(DEFAULT_RMI_PORTS)
            continue
        try:
            if "-" in part:
                start, end = (int(p) for p in part.split("-", 1))
                if start > end:
                    start, end = end, start
                ports.extend(range(start, end + 1))
            else:
                ports.append(int(part))
        except ValueError:
            raise ValidationError("Invalid port specification: %s" % part)
    if not ports:
        raise ValidationError("Empty port specification")
    for port in ports:
        if not 0 < port < 65536:
            raise ValidationError("Port out of range: %d" % port)
    return list(dict.fromkeys(ports))


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 2: Checks
# ═══════════════════════════════════════════════════════════════════════════════

def random_name(prefix="rmiology"):
    return "%s-%s" % (prefix, os.urandom(6).hex())


def _scan_call(host, port, config, objid, opnum, method_hash, args, expect_value=False):
    return call_endpoint(host, port, config, objid, opnum, method_hash, args,
                         expect_value=expect_value, scan=True)


def _component_call(host, port, config, component, method, args, expect_value=False,
                    hash_dispatch=False):
    spec = COMPONENTS[component]
    opnum, method_hash = spec.dispatch(method, hash_dispatch=hash_dispatch)
    return _scan_call(host, port, config, spec.objid, opnum, method_hash, args, expect_value)


def check_protocol(host, port, config):
    """Prerequisite: the port completes a JRMP stream handshake."""
    with RMIConnection.from_config(host, port, config, scan=True) as conn:
        return conn.server_view


def check_ssrf(host, port, config):
    spec = COMPONENTS[Component.REGISTRY]
    opnum, method_hash = spec.dispatch("list")
    payload = wrap(encode_call(spec.objid, opnum, method_hash), SSRFStyle.RAW, host, port)
    conn = RMIConnection.from_config(host, port, config, scan=True)
    try:
        conn.open(handshake=False)
        conn.write_frame(payload)
        frame = conn.read_frame(decode_response)
    finally:
        conn.close()
    return Verdict.VULNERABLE, "single-shot stream answered (%s)" % frame.describe()


def check_localhost_bypass(host, port, config):
    frame = _component_call(host, port, config, Component.REGISTRY, "unbind",
                            java_string(random_name()), hash_dispatch=True)
    markers = classify_return(frame)
    if "not_bound" in markers:
        return Verdict.VULNERABLE, "hash-dispatched unbind reached the registry (NotBoundException)"
    if "access_denied" in markers:
        return Verdict.NOT_VULNERABLE, "registry enforces the localhost check (AccessException)"
    if markers & {"no_such_method", "skeleton_mismatch"}:
        return Verdict.NOT_VULNERABLE, "hash dispatch is not accepted"
    if "no_such_object" in markers:
        return Verdict.INCONCLUSIVE, "no registry on this port"
    return Verdict.INCONCLUSIVE, frame.describe()


def check_filter(host, port, config):
    frame = _component_call(host, port, config, Component.DGC, "clean", serialized_hashmap())
    markers = classify_return(frame)
    if "filter_rejected" in markers:
        return Verdict.NOT_VULNERABLE, "java.util.HashMap rejected by the deserialization filter"
    if "class_cast" in markers:
        return Verdict.VULNERABLE, "java.util.HashMap was deserialized by the DGC (no filter)"
    if "no_such_object" in markers:
        return Verdict.INCONCLUSIVE, "no DGC on this port"
    return Verdict.INCONCLUSIVE, frame.describe()


def check_codebase(host, port, config):
    class_name = "rmiology.Canary%s" % os.urandom(4).hex()
    frame = _component_call(host, port, config, Component.DGC, "clean",
                            serialized_codebase_object(class_name, "InvalidURL"))
    markers = classify_return(frame)
    if "malformed_url" in markers:
        return Verdict.VULNERABLE, "remote class loading enabled (codebase URL was parsed)"
    if "filter_rejected" in markers:
        return Verdict.NOT_VULNERABLE, "rejected by the deserialization filter"
    if "codebase_disabled" in markers:
        return Verdict.NOT_VULNERABLE, "RMI class loader disabled (no security manager)"
    if "class_not_found" in markers:
        return Verdict.NOT_VULNERABLE, "codebase ignored (useCodebaseOnly)"
    if "no_such_object" in markers:
        return Verdict.INCONCLUSIVE, "no DGC on this port"
    return Verdict.INCONCLUSIVE, frame.describe()


def check_outdated(host, port, config):
    frame = _component_call(host, port, config, Component.REGISTRY, "lookup", serialized_integer(0))
    markers = classify_return(frame)
    if "class_cast" in markers:
        return Verdict.VULNERABLE, "lookup argument is read with readObject (outdated registry)"
    if "stream_corrupted" in markers:
        return Verdict.NOT_VULNERABLE, "lookup argument is read with readString"
    if "no_such_object" in markers:
        return Verdict.INCONCLUSIVE, "no registry on this port"
    return Verdict.INCONCLUSIVE, frame.describe()


def stub_class_names(value):
    if not isinstance(value, JavaObject):
        return []
    names = list(value.class_desc.class_names())
    ref = extract_remote_ref(value)
    if ref:
        names.extend(n for n in ref.class_names if n not in names)
    return names


def check_jmx(host, port, config):
    frame = _component_call(host, port, config, Component.REGISTRY, "list", b"", expect_value=True)
    if frame.is_exception:
        if "no_such_object" in classify_return(frame):
            return Verdict.INCONCLUSIVE, "no registry on this port"
        return Verdict.INCONCLUSIVE, frame.describe()
    names = read_string_array(frame)
    exposed = []
    for name in names:
        answer = _component_call(host, port, config, Component.REGISTRY, "lookup",
                                 java_string(name), expect_value=True)
        if answer.is_exception:
            continue
        if any("javax.management.remote.rmi.RMIServer" in n for n in stub_class_names(answer.value)):
            exposed.append(name)
    if exposed:
        return Verdict.VULNERABLE, "JMX bound as: %s" % ", ".join(exposed)
    return Verdict.NOT_VULNERABLE, "no JMX endpoint among %d bound name(s)" % len(names)


def check_activator(host, port, config):
    frame = _component_call(host, port, config, Component.ACTIVATOR, "activate",
                            java_null() + java_primitive("Z", False), expect_value=True)
    markers = classify_return(frame)
    if "no_such_object" in markers:
        return Verdict.NOT_VULNERABLE, "no activator on this port"
    if "no_such_method" in markers:
        return Verdict.NOT_VULNERABLE, "object 1 is not an activator"
    return Verdict.VULNERABLE, "activator present (%s)" % frame.describe()


CHECKS = {
    ScanAction.SSRF: check_ssrf,
    ScanAction.LOCALHOST_BYPASS: check_localhost_bypass,
    ScanAction.FILTER: check_filter,
    ScanAction.CODEBASE: check_codebase,
    ScanAction.OUTDATED: check_outdated,
    ScanAction.JMX: check_jmx,
    ScanAction.ACTIVATOR: check_activator,
}


def run_check(check, host, port, config):
    """Run one check; transport failures read error, undecodable answers inconclusive."""
    try:
        return check(host, port, config)
    except TRANSPORT_ERRORS as e:
        return Verdict.ERROR, str(e)
    except MalformedFrame as e:
        return Verdict.INCONCLUSIVE, "malformed response: %s" % e


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 3: Vulnerability Scanner
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ScanCell:
    verdict: Verdict
    detail: str = ""


@dataclass
class ScanRow:
    host: str
    port: int
    cells: Dict[ScanAction, Optional[ScanCell]] = field(default_factory=dict)

    def to_dict(self):
        return {
            "host": self.host,
            "port": self.port,
            "results": {
                action.value: {"verdict": cell.verdict.value, "detail": cell.detail}
                for action, cell in self.cells.items() if cell is not None
            },
        }


class ScanReport:
    """Result matrix keyed by port, rows and cells created in input order."""

    def __init__(self, host, ports, actions):
        self.host = host
        self.actions = list(actions)
        self._lock = threading.Lock()
        self._rows = {p: ScanRow(host, p, {a: None for a in self.actions}) for p in ports}

    def set(self, port, action, verdict, detail=""):
        with self._lock:
            self._rows[port].cells[action] = ScanCell(verdict, detail)

    def set_row(self, port, verdict, detail=""):
        with self._lock:
            for action in self.actions:
                self._rows[port].cells[action] = ScanCell(verdict, detail)

    def finalize(self, detail="cancelled"):
        with self._lock:
            for row in self._rows.values():
                for action, cell in row.cells.items():
                    if cell is None:
                        row.cells[action] = ScanCell(Verdict.INCONCLUSIVE, detail)

    @property
    def rows(self):
        return list(self._rows.values())

    def verdicts(self):
        return {(row.port, action): cell.verdict
                for row in self.rows for action, cell in row.cells.items() if cell is not None}

    def to_dict(self):
        return {"host": self.host, "actions": [a.value for a in self.actions],
                "rows": [row.to_dict() for row in self.rows]}


class VulnScanner:
    """Runs (port x action) check units on a bounded pool.

    checks and prerequisite are injectable so tests can force failures for a
    single port without touching the others.
    """

    def __init__(self, config, checks=None, prerequisite=check_protocol, cancel_event=None):
        self.config = config
        self.checks = dict(CHECKS) if checks is None else dict(checks)
        self.prerequisite = prerequisite
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self):
        self.cancel_event.set()

    def _check_port(self, host, port):
        """None when the port speaks JRMP, otherwise the cell for the whole row."""
        if self.cancel_event.is_set():
            return ScanCell(Verdict.INCONCLUSIVE, "cancelled")
        try:
            self.prerequisite(host, port, self.config)
        except TRANSPORT_ERRORS as e:
            return ScanCell(Verdict.ERROR, str(e))
        except MalformedFrame as e:
            return ScanCell(Verdict.INCONCLUSIVE, "not speaking RMI: %s" % e)
        return None

    def _run_unit(self, host, port, action):
        if self.cancel_event.is_set():
            return Verdict.INCONCLUSIVE, "cancelled"
        return run_check(self.checks[action], host, port, self.config)

    def run(self, host, ports, actions=None, progress_callback=None):
        ports = list(dict.fromkeys(ports))
        actions = ScanAction.parse(None) if not actions else list(dict.fromkeys(actions))
        report = ScanReport(host, ports, actions)
        threads = max(1, self.config.threads)
        logger.info("scanning %s: %d port(s) x %d action(s), %d thread(s)",
                    host, len(ports), len(actions), threads)

        with ThreadPoolExecutor(max_workers=threads) as executor:
            # Phase 1: which ports speak JRMP at all
            futures = {executor.submit(self._check_port, host, p): p for p in ports}
            live = set()
            for future in as_completed(futures):
                port = futures[future]
                cell = future.result()
                if cell is None:
                    live.add(port)
                    continue
                logger.debug("port %d skipped: %s", port, cell.detail)
                report.set_row(port, cell.verdict, cell.detail)
                if progress_callback:
                    progress_callback(len(actions))

            # Phase 2: one unit per (live port x action)
            if not self.cancel_event.is_set():
                futures = {executor.submit(self._run_unit, host, p, a): (p, a)
                           for p in ports if p in live for a in actions}
                for future in as_completed(futures):
                    port, action = futures[future]
                    verdict, detail = future.result()
                    report.set(port, action, verdict, detail)
                    if progress_callback:
                        progress_callback(1)
                    if self.cancel_event.is_set():
                        for f in futures:
                            f.cancel()
                        break

        report.finalize()
        return report


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION 4: Method Guesser
# ═══════════════════════════════════════════════════════════════════════════════

# Built-in candidates used when no wordlist file is given
DEFAULT_WORDLIST = [
    "# generic",
    "String execute(String cmd)",
    "String execute(String[] cmd)",
    "String exec(String cmd)",
    "String system(String cmd)",
    "String system(String[] args)",
    "String runCommand(String cmd)",
    "int runCommand(String[] cmd)",
    "void shutdown()",
    "void stop()",
    "void restart()",
    "boolean login(String username, String password)",
    "String login(String username, String password)",
    "void logout(String session)",
    "String getVersion()",
    "String getStatus()",
    "Object getObject(String name)",
    "void setObject(String name, Object value)",
    "String getProperty(String key)",
    "void setProperty(String key, String value)",
    "Properties getProperties()",
    "Map getConfiguration()",
    "void updateConfiguration(Map config)",
    "String readFile(String path)",
    "void writeFile(String path, byte[] content)",
    "byte[] download(String path)",
    "void upload(String path, byte[] content)",
    "boolean deleteFile(String path)",
    "List listFiles(String directory)",
    "String ping(String host)",
    "String query(String sql)",
    "int update(String sql)",
    "Object invoke(String method, Object[] args)",
    "Object call(String name, Object argument)",
    "void log(String message)",
    "void log(int level, String message)",
    "String echo(String message)",
    "int add(int a, int b)",
    "long getTime()",
    "void sleep(long millis)",
    "void releaseRecord(int recordID, String tableName, Integer remoteHashCode)",
    "String getUser(int id)",
    "void addUser(String username, String password)",
    "void removeUser(String username)",
    "# JMX",
    "javax.management.remote.rmi.RMIConnection newClient(Object credentials)",
]


def load_wordlist(lines):
    """Parse candidate signatures; comments and blank lines skipped, bad lines logged."""
    signatures = []
    seen = set()
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            sig = MethodSignature.parse(line)
        except SignatureError as e:
            logger.warning("skipping wordlist line %d: %s", lineno, e)
            continue
        key = (sig.name, sig.descriptor, sig.param_types)
        if key in seen:
            continue
        seen.add(key)
        signatures.append(sig)
    return signatures


def guess_arguments(signature):
    """Type-mismatched first argument so a matching method fails during unmarshalling."""
    if not signature.argument_count:
        return b""
    if signature.param_is_primitive(0):
        return java_null()
    return block_data(b"\x00\x00\x00\x00")


class GuessVerdict(str, Enum):
    EXISTS = "exists"
    DOES_NOT_EXIST = "does-not-exist"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class RemoteTarget:
    label: str
    host: str
    port: int
    objid: ObjID
    class_names: Tuple[str, ...] = ()


@dataclass
class GuessResult:
    target: str
    signature: str
    method_hash: int
    verdict: Optional[GuessVerdict] = None
    detail: str = ""

    def to_dict(self):
        return {
            "target": self.target,
            "signature": self.signature,
            "hash": self.method_hash,
            "verdict": self.verdict.value if self.verdict else None,
            "detail": self.detail,
        }


def classify_guess(frame):
    if "no_such_method" in classify_return(frame):
        return GuessVerdict.DOES_NOT_EXIST, "unrecognized method hash"
    return GuessVerdict.EXISTS, frame.describe()


def dedupe_targets(targets, guess_duplicates=False):
    """Drop targets whose stub class was already seen (bound names of one class)."""
    if guess_duplicates:
        return list(targets)
    unique = []
    seen = set()
    for target in targets:
        key = tuple(target.class_names)
        if key and key in seen:
            logger.info("skipping %s: same stub class as an earlier bound name", target.label)
            continue
        seen.add(key)
        unique.append(target)
    return unique


class GuessReport:
    def __init__(self):
        self._lock = threading.Lock()
        self._results = {}

    def add(self, result):
        with self._lock:
            self._results[(result.target, result.signature)] = result

    def update(self, target, signature, verdict, detail):
        with self._lock:
            result = self._results[(target, signature)]
            result.verdict = verdict
            result.detail = detail

    @property
    def results(self):
        return list(self._results.values())

    def existing(self, target=None):
        return [r for r in self.results if r.verdict is GuessVerdict.EXISTS
                and (target is None or r.target == target)]

    def to_dict(self):
        return {"results": [r.to_dict() for r in self.results]}


class MethodGuesser:
    """Finds which candidate signatures a remote object implements.

    Candidates are grouped by method hash and every distinct hash costs
    exactly one call per target.
    """

    def __init__(self, config, zero_arg=False, guess_duplicates=False,
                 cancel_event=None, call=call_endpoint):
        self.config = config
        self.zero_arg = zero_arg
        self.guess_duplicates = guess_duplicates
        self.cancel_event = cancel_event or threading.Event()
        self.call = call

    def cancel(self):
        self.cancel_event.set()

    def group(self, signatures):
        groups = {}
        for sig in signatures:
            if not sig.argument_count and not self.zero_arg:
                logger.debug("skipping zero-argument candidate %s", sig)
                continue
            groups.setdefault(sig.method_hash, []).append(sig)
        return list(groups.values())

    def _guess(self, target, signature):
        if self.cancel_event.is_set():
            return GuessVerdict.AMBIGUOUS, "cancelled"
        try:
            frame = self.call(target.host, target.port, self.config, target.objid, -1,
                              signature.method_hash, guess_arguments(signature),
                              expect_value=signature.returns_object)
        except TRANSPORT_ERRORS as e:
            return GuessVerdict.AMBIGUOUS, str(e)
        except MalformedFrame as e:
            return GuessVerdict.AMBIGUOUS, "malformed response: %s" % e
        return classify_guess(frame)

    def run(self, targets, signatures, progress_callback=None):
        groups = self.group(signatures)
        report = GuessReport()
        units = {}
        for target in targets:
            for group in groups:
                members = group if self.guess_duplicates else group[:1]
                for sig in members:
                    report.add(GuessResult(target.label, str(sig), sig.method_hash))
                units[(target, group[0].method_hash)] = (target, group, members)

        threads = max(1, self.config.threads)
        logger.info("guessing %d hash(es) on %d target(s), %d thread(s)",
                    len(groups), len(targets), threads)
        with ThreadPoolExecutor(max_workers=threads) as executor:
            futures = {executor.submit(self._guess, target, group[0]): key
                       for key, (target, group, _) in units.items()}
            for future in as_completed(futures):
                target, group, members = units[futures[future]]
                verdict, detail = future.result()
                for sig in members:
                    report.update(target.label, str(sig), verdict, detail)
                if progress_callback:
                    progress_callback(1)
                if self.cancel_event.is_set():
                    for f in futures:
                        f.cancel()
                    break

        for result in report.results:
            if result.verdict is None:
                result.verdict = GuessVerdict.AMBIGUOUS
                result.detail = "cancelled"
        return report
