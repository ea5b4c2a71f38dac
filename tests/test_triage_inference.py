from collections import OrderedDict

import pytest

import triage_inference
from models import EmergencyType, Severity


class FakeResponse:
    def __init__(self, text):
        self.text = text


class FakeModels:
    def __init__(self, answer):
        self.answer = answer
        self.calls = 0

    def generate_content(self, model, contents, config):
        self.calls += 1
        if isinstance(self.answer, Exception):
            raise self.answer
        return FakeResponse(self.answer)


class FakeClient:
    def __init__(self, answer):
        self.models = FakeModels(answer)


@pytest.fixture(autouse=True)
def empty_cache(monkeypatch):
    monkeypatch.setattr(triage_inference, "_triage_cache", OrderedDict())


def test_classifies_description(monkeypatch):
    client = FakeClient(" Stroke\n")
    monkeypatch.setattr(triage_inference, "_get_client", lambda: client)

    assert triage_inference.infer_emergency_type("Face drooping, slurred speech") == EmergencyType.STROKE
    assert triage_inference.infer_emergency_type("face drooping, slurred speech") == EmergencyType.STROKE
    assert client.models.calls == 1


def test_aliases_are_normalized(monkeypatch):
    monkeypatch.setattr(triage_inference, "_get_client", lambda: FakeClient("heart attack"))
    assert triage_inference.infer_emergency_type("Crushing chest pain") == EmergencyType.CARDIAC


def test_unknown_answer_falls_back_to_other(monkeypatch):
    monkeypatch.setattr(triage_inference, "_get_client", lambda: FakeClient("sprained ankle"))
    assert triage_inference.infer_emergency_type("Twisted my ankle badly") == EmergencyType.OTHER


def test_client_error_falls_back_to_other(monkeypatch):
    monkeypatch.setattr(triage_inference, "_get_client", lambda: FakeClient(RuntimeError("quota")))
    assert triage_inference.infer_emergency_type("Something is wrong") == EmergencyType.OTHER


def test_no_api_key_falls_back_to_other(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    assert triage_inference.infer_emergency_type("Something is wrong") == EmergencyType.OTHER
    assert triage_inference.infer_emergency_type("") == EmergencyType.OTHER


def test_severity_inference(monkeypatch):
    monkeypatch.setattr(triage_inference, "_get_client", lambda: FakeClient("critical"))
    assert triage_inference.infer_severity("Not breathing") == Severity.CRITICAL


def test_severity_defaults_without_client(monkeypatch):
    monkeypatch.setattr(triage_inference, "_get_client", lambda: None)
    assert triage_inference.infer_severity("Not breathing", default=Severity.MODERATE) == Severity.MODERATE


def test_failed_call_is_not_cached(monkeypatch):
    client = FakeClient(RuntimeError("timeout"))
    monkeypatch.setattr(triage_inference, "_get_client", lambda: client)
    assert triage_inference.infer_emergency_type("Chest pain") == EmergencyType.OTHER

    client.models.answer = "cardiac"
    assert triage_inference.infer_emergency_type("Chest pain") == EmergencyType.CARDIAC
    assert client.models.calls == 2


def test_cache_evicts_oldest_entries(monkeypatch):
    client = FakeClient("trauma")
    monkeypatch.setattr(triage_inference, "_get_client", lambda: client)
    monkeypatch.setattr(triage_inference, "TRIAGE_CACHE_SIZE", 2)

    for description in ("fell off a ladder", "car crash", "cut hand"):
        triage_inference.infer_emergency_type(description)

    assert list(triage_inference._triage_cache) == ["car crash", "cut hand"]
    triage_inference.infer_emergency_type("fell off a ladder")
    assert client.models.calls == 4


def test_client_is_built_with_timeout(monkeypatch):
    created = {}

    def fake_client(**kwargs):
        created.update(kwargs)
        return FakeClient("stroke")

    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(triage_inference.genai, "Client", fake_client)
    monkeypatch.setattr(triage_inference, "GEMINI_TIMEOUT", 2.5)

    triage_inference._get_client()

    assert created["api_key"] == "test-key"
    assert created["http_options"].timeout == 2500
