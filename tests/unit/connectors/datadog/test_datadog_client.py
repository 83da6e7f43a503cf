"""Unit tests for the Datadog incident collector."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from dora_sync.connectors.datadog.client import DatadogClient, DatadogClientError
from dora_sync.models import IncidentSeverity, IncidentState

SINCE = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def datadog_client():
    return DatadogClient(api_key="dd-api", app_key="dd-app", delay_ms=0)


@pytest.fixture
def no_sleep():
    with patch(
        "dora_sync.connectors.datadog.client.asyncio.sleep", new=AsyncMock()
    ) as sleep:
        yield sleep


def _mock_response(status_code: int = 200, json_data: dict | None = None) -> Mock:
    resp = Mock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data or {}
    if status_code >= 400:
        resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            f"HTTP {status_code}", request=Mock(), response=resp
        )
    return resp


def _incident(incident_id: str, state: str = "active", severity: str = "SEV-2") -> dict:
    return {
        "id": incident_id,
        "type": "incidents",
        "attributes": {
            "title": f"Incident {incident_id}",
            "created": "2024-05-02T10:00:00Z",
            "modified": "2024-05-02T11:00:00Z",
            "resolved": None,
            "fields": {
                "state": {"type": "dropdown", "value": state},
                "severity": {"type": "dropdown", "value": severity},
            },
        },
    }


def _page(items: list[dict], next_offset: int | None = None) -> dict:
    return {"data": items, "meta": {"pagination": {"next_offset": next_offset}}}


class TestDatadogClientSetup:
    def test_auth_headers(self, datadog_client):
        headers = datadog_client.client.headers
        assert headers["DD-API-KEY"] == "dd-api"
        assert headers["DD-APPLICATION-KEY"] == "dd-app"

    def test_custom_site(self):
        client = DatadogClient("a", "b", base_url="https://api.datadoghq.eu/")
        assert client.base_url == "https://api.datadoghq.eu"


class TestGetIncidents:
    @pytest.mark.asyncio
    async def test_filters_by_since_and_service(self, datadog_client):
        mock_get = AsyncMock(return_value=_mock_response(json_data=_page([_incident("1")])))

        with patch.object(datadog_client.client, "get", new=mock_get):
            batch = await datadog_client.get_incidents(SINCE, "checkout")

        args, kwargs = mock_get.call_args
        assert args == ("/api/v2/incidents",)
        assert kwargs["params"]["filter[since]"] == "2024-05-01T00:00:00Z"
        assert kwargs["params"]["filter[query]"] == "service:checkout"
        assert kwargs["params"]["page[offset]"] == 0
        assert [i.id for i in batch.incidents] == ["1"]
        assert batch.incidents[0].state == IncidentState.ACTIVE
        assert batch.incidents[0].severity == IncidentSeverity.SEV2

    @pytest.mark.asyncio
    async def test_no_service_filter(self, datadog_client):
        mock_get = AsyncMock(return_value=_mock_response(json_data=_page([])))

        with patch.object(datadog_client.client, "get", new=mock_get):
            batch = await datadog_client.get_incidents(SINCE)

        assert "filter[query]" not in mock_get.call_args.kwargs["params"]
        assert batch.incidents == []

    @pytest.mark.asyncio
    async def test_offset_pagination(self, datadog_client):
        mock_get = AsyncMock(
            side_effect=[
                _mock_response(json_data=_page([_incident("1"), _incident("2")], next_offset=2)),
                _mock_response(json_data=_page([_incident("3", state="resolved")])),
            ]
        )

        with patch.object(datadog_client.client, "get", new=mock_get):
            batch = await datadog_client.get_incidents(SINCE, "checkout")

        assert [i.id for i in batch.incidents] == ["1", "2", "3"]
        assert batch.incidents[2].state == IncidentState.RESOLVED
        assert mock_get.await_count == 2
        assert mock_get.call_args_list[1].kwargs["params"]["page[offset]"] == 2

    @pytest.mark.asyncio
    async def test_unmappable_item_is_rejected_not_dropped(self, datadog_client):
        broken = {"id": "bad", "attributes": {"title": "no created"}}
        mock_get = AsyncMock(
            return_value=_mock_response(json_data=_page([_incident("1"), broken]))
        )

        with patch.object(datadog_client.client, "get", new=mock_get):
            batch = await datadog_client.get_incidents(SINCE, "checkout")

        assert [i.id for i in batch.incidents] == ["1"]
        assert batch.rejected == [broken]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "malformed",
        [
            {"id": "null-attrs", "type": "incidents", "attributes": None},
            {
                "id": "epoch-created",
                "type": "incidents",
                "attributes": {"title": "epoch", "created": 1714644000},
            },
            None,
        ],
        ids=["null_attributes", "non_string_timestamp", "null_item"],
    )
    async def test_malformed_item_does_not_drop_batch(self, datadog_client, malformed):
        mock_get = AsyncMock(
            return_value=_mock_response(json_data=_page([_incident("inc-ok"), malformed]))
        )

        with patch.object(datadog_client.client, "get", new=mock_get):
            batch = await datadog_client.get_incidents(SINCE, "checkout")

        assert [i.id for i in batch.incidents] == ["inc-ok"]
        assert batch.rejected == [malformed]

    @pytest.mark.asyncio
    async def test_non_json_body_raises_client_error(self, datadog_client):
        resp = _mock_response()
        resp.json.side_effect = ValueError("Expecting value: line 1 column 1")
        mock_get = AsyncMock(return_value=resp)

        with patch.object(datadog_client.client, "get", new=mock_get):
            with pytest.raises(DatadogClientError, match="DATADOG_INVALID_RESPONSE") as exc:
                await datadog_client.get_incidents(SINCE, "checkout")

        assert isinstance(exc.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_server_error_retried(self, datadog_client, no_sleep):
        mock_get = AsyncMock(
            side_effect=[
                _mock_response(status_code=503),
                _mock_response(json_data=_page([_incident("1")])),
            ]
        )

        with patch.object(datadog_client.client, "get", new=mock_get):
            batch = await datadog_client.get_incidents(SINCE, "checkout")

        assert len(batch.incidents) == 1
        assert mock_get.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_server_error_raises(self, datadog_client, no_sleep):
        mock_get = AsyncMock(return_value=_mock_response(status_code=500))

        with patch.object(datadog_client.client, "get", new=mock_get):
            with pytest.raises(DatadogClientError):
                await datadog_client.get_incidents(SINCE, "checkout")

        assert mock_get.await_count == DatadogClient.MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_forbidden_not_retried(self, datadog_client):
        mock_get = AsyncMock(return_value=_mock_response(status_code=403))

        with patch.object(datadog_client.client, "get", new=mock_get):
            with pytest.raises(DatadogClientError, match="DATADOG_REQUEST_ERROR"):
                await datadog_client.get_incidents(SINCE, "checkout")

        mock_get.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_exhausted(self, datadog_client, no_sleep):
        mock_get = AsyncMock(side_effect=httpx.ReadTimeout("slow"))

        with patch.object(datadog_client.client, "get", new=mock_get):
            with pytest.raises(DatadogClientError, match="DATADOG_TIMEOUT"):
                await datadog_client.get_incidents(SINCE, "checkout")


class TestListServices:
    @pytest.mark.asyncio
    async def test_service_names(self, datadog_client):
        body = {
            "data": [
                {"attributes": {"schema": {"dd-service": "checkout"}}},
                {"attributes": {"schema": {}}},
                {"attributes": {"schema": {"dd-service": "billing"}}},
            ]
        }
        mock_get = AsyncMock(return_value=_mock_response(json_data=body))

        with patch.object(datadog_client.client, "get", new=mock_get):
            names = await datadog_client.list_services()

        assert names == ["checkout", "billing"]
        assert mock_get.call_args.args == ("/api/v2/services/definitions",)
