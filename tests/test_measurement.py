"""
Test probe sessions and the HTTP probe transport.
"""
from unittest.mock import MagicMock

import pytest
import requests

from poloc.collaborators.transport import HttpProbeTransport, MeasurementTransport, ProbeResponse
from poloc.core.coordination import MeasurementSummary, ProbeSession, make_nonce
from poloc.core.errors import CollaboratorError, ErrorCode, InsufficientData, ValidationError


class ScriptedTransport(MeasurementTransport):
    """Replies according to a per-sequence script: 'ok', 'timeout', 'raise_timeout', 'bad_nonce', 'stale'."""

    def __init__(self, script=None, rtt=lambda seq: 10.0 + seq):
        self.script = script or {}
        self.rtt = rtt
        self.nonces = []

    def send_probe(self, participant_id, target_address, nonce, sequence, timeout_s):
        self.nonces.append(nonce)
        action = self.script.get(sequence, "ok")
        if action == "timeout":
            return None
        if action == "raise_timeout":
            raise TimeoutError()
        if action == "bad_nonce":
            return ProbeResponse(nonce="forged", sequence=sequence, rtt_ms=1.0)
        if action == "stale":
            return ProbeResponse(nonce=nonce, sequence=sequence - 1, rtt_ms=1.0)
        return ProbeResponse(nonce=nonce, sequence=sequence, rtt_ms=self.rtt(sequence))


def _session(transport, **kwargs):
    kwargs.setdefault("probes_per_round", 4)
    kwargs.setdefault("rounds", 2)
    kwargs.setdefault("interval_s", 0)
    return ProbeSession(transport, **kwargs)


class TestProbeSession:
    def test_all_probes_answered(self):
        summary = _session(ScriptedTransport()).run("p1", "http://target")
        assert summary.sent == 8
        assert summary.received == 8
        assert summary.samples == [10.0 + i for i in range(8)]
        assert summary.min_rtt_ms == 10.0
        assert summary.avg_rtt_ms == 13.5
        assert summary.success_rate == 1.0

    def test_failed_probes_stay_in_series(self):
        transport = ScriptedTransport({1: "timeout", 2: "raise_timeout", 4: "bad_nonce", 6: "stale"})
        summary = _session(transport).run("p1", "http://target")
        assert summary.samples == [10.0, None, None, 13.0, None, 15.0, None, 17.0]
        assert summary.timeouts == 2
        assert summary.discarded == 2
        assert summary.received == 4
        assert summary.to_dict()["success_rate"] == 0.5

    def test_implausible_rtt_discarded(self):
        transport = ScriptedTransport(rtt=lambda seq: -1.0 if seq == 0 else 5000.0 if seq == 1 else 2.0)
        summary = _session(transport, timeout_s=3.0).run("p1", "http://target")
        assert summary.samples[:2] == [None, None]
        assert summary.discarded == 2

    def test_fresh_nonce_per_probe(self):
        transport = ScriptedTransport()
        _session(transport).run("p1", "http://target")
        assert len(set(transport.nonces)) == 8
        assert len(make_nonce()) == 32

    def test_sleeps_between_probes(self):
        sleep = MagicMock()
        _session(ScriptedTransport(), interval_s=0.05, sleep=sleep).run("p1", "http://target")
        assert sleep.call_count == 7
        sleep.assert_called_with(0.05)

    def test_no_successful_probe(self):
        transport = ScriptedTransport({i: "timeout" for i in range(8)})
        with pytest.raises(InsufficientData) as exc:
            _session(transport).run("p1", "http://target")
        assert exc.value.code == ErrorCode.EMPTY_MEASUREMENTS
        assert exc.value.details["timeouts"] == 8

    def test_transport_failure_is_wrapped(self):
        transport = MagicMock(spec=MeasurementTransport)
        transport.send_probe.side_effect = OSError("network unreachable")
        with pytest.raises(CollaboratorError) as exc:
            _session(transport).run("p1", "http://target")
        assert exc.value.code == ErrorCode.TRANSPORT_FAILED

    def test_summary_without_samples(self):
        summary = MeasurementSummary("p1", "http://target")
        assert summary.success_rate == 0.0
        assert "min_rtt_ms" not in summary.to_dict()


class TestHttpProbeTransport:
    def _response(self, status=200, body=None):
        resp = MagicMock()
        resp.status_code = status
        resp.json.return_value = body if body is not None else {}
        return resp

    def test_echo(self):
        session = MagicMock()
        session.post.return_value = self._response(body={
            "nonce": "abc", "sequence": 3, "location": {"latitude": 1.0, "longitude": 2.0},
        })
        response = HttpProbeTransport(session=session).send_probe("p1", "http://target/", "abc", 3, 2.0)

        assert response.nonce == "abc"
        assert response.sequence == 3
        assert response.rtt_ms >= 0.0
        assert response.responded_location.latitude == 1.0
        session.post.assert_called_once_with(
            "http://target/probe",
            json={"participant_id": "p1", "nonce": "abc", "sequence": 3},
            timeout=2.0,
        )

    def test_timeout_returns_none(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.Timeout()
        assert HttpProbeTransport(session=session).send_probe("p1", "http://t", "abc", 0, 1.0) is None

    def test_connection_error(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(CollaboratorError):
            HttpProbeTransport(session=session).send_probe("p1", "http://t", "abc", 0, 1.0)

    def test_server_error(self):
        session = MagicMock()
        session.post.return_value = self._response(503, {})
        with pytest.raises(CollaboratorError) as exc:
            HttpProbeTransport(session=session).send_probe("p1", "http://t", "abc", 1, 1.0)
        assert exc.value.code == ErrorCode.TRANSPORT_FAILED

    @pytest.mark.parametrize("body", [
        {"sequence": 1},
        {"nonce": "abc", "sequence": "first"},
        {"nonce": "abc", "sequence": 1, "location": {"latitude": 123.0, "longitude": 0.0}},
        ["abc", 1],
    ])
    def test_malformed_echo(self, body):
        session = MagicMock()
        session.post.return_value = self._response(body=body)
        with pytest.raises(ValidationError) as exc:
            HttpProbeTransport(session=session).send_probe("p1", "http://t", "abc", 1, 1.0)
        assert exc.value.code == ErrorCode.INVALID_MEASUREMENT

    def test_malformed_echo_is_discarded_by_session(self):
        def reply(url, json, timeout):
            body = {"nonce": json["nonce"], "sequence": json["sequence"]}
            if json["sequence"] == 1:
                body["location"] = {"latitude": 123.0, "longitude": 0.0}
            return self._response(body=body)

        session = MagicMock()
        session.post.side_effect = reply
        summary = _session(HttpProbeTransport(session=session), rounds=1).run("p1", "http://target")

        assert summary.sent == 4
        assert summary.discarded == 1
        assert summary.received == 3
        assert summary.samples[1] is None
