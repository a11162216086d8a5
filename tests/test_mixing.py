"""Tests for the mixing collaborator backends."""
from __future__ import annotations

import json

import httpx
import pytest

from stemhub.services import mixing
from stemhub.services.mixing import (
    HttpMixingClient,
    MixingError,
    PathMixingBackend,
    get_mixing_backend,
    set_mixing_backend,
)


def _client(handler) -> HttpMixingClient:
    return HttpMixingClient(base_url="http://mixer.test", transport=httpx.MockTransport(handler))


class TestPathBackend:
    async def test_paths_are_derived_from_stage_id(self) -> None:
        backend = PathMixingBackend(mixed_prefix="out/mixed/", waveform_prefix="out/peaks")
        result = await backend.mix("stage-1", ["a.wav", "b.wav"])
        assert result.mixed_file_path == "out/mixed/stage-1/guide.wav"
        assert result.waveform_data_path == "out/peaks/stage-1/peaks.json"


class TestHttpMixingClient:
    async def test_successful_mix(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/mix"
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"mixedFilePath": "mixes/s1.wav", "waveformDataPath": "peaks/s1.json"},
            )

        client = _client(handler)
        try:
            result = await client.mix("s1", ["takes/bass.wav"])
        finally:
            await client.close()

        assert seen == [{"stageId": "s1", "stemPaths": ["takes/bass.wav"]}]
        assert result.mixed_file_path == "mixes/s1.wav"
        assert result.waveform_data_path == "peaks/s1.json"

    async def test_server_error_becomes_mixing_error(self) -> None:
        client = _client(lambda request: httpx.Response(503, text="busy"))
        try:
            with pytest.raises(MixingError) as exc_info:
                await client.mix("s1", [])
        finally:
            await client.close()
        assert exc_info.value.status_code == 502

    async def test_transport_failure_becomes_mixing_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        try:
            with pytest.raises(MixingError):
                await client.mix("s1", ["x.wav"])
        finally:
            await client.close()

    async def test_missing_fields_become_mixing_error(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"mixedFilePath": "m.wav"}))
        try:
            with pytest.raises(MixingError, match="missing output paths"):
                await client.mix("s1", ["x.wav"])
        finally:
            await client.close()

    def test_requires_a_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(mixing.settings, "mixing_service_url", None)
        with pytest.raises(ValueError):
            HttpMixingClient()


class TestBackendSelection:
    def test_path_backend_without_service_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(mixing.settings, "mixing_service_url", None)
        set_mixing_backend(None)
        assert isinstance(get_mixing_backend(), PathMixingBackend)

    def test_http_backend_with_service_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(mixing.settings, "mixing_service_url", "http://mixer.test")
        set_mixing_backend(None)
        backend = get_mixing_backend()
        assert isinstance(backend, HttpMixingClient)
        assert backend.base_url == "http://mixer.test"
