"""Processor API client tests using httpx.MockTransport"""
import httpx
import pytest

from app.core.errors import ProcessorAPIError
from app.services.processor_client import ProcessorClient


def client_for(handler):
    return ProcessorClient(
        base_url="https://api.processor.test/",
        access_token="TEST-TOKEN",
        timeout=1.0,
        transport=httpx.MockTransport(handler)
    )


@pytest.mark.high
class TestProcessorClient:

    def test_get_payment_maps_fields(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={
                "id": 123,
                "status": "approved",
                "external_reference": "SUB-u1-p1-abc",
                "transaction_amount": 99.5,
                "currency_id": "ARS",
                "payer": {"email": "payer@example.com"},
                "date_created": "2026-10-17T09:00:00.000-03:00",
                "metadata": {"preapproval_id": "pre_1"},
            })

        resource = client_for(handler).get_payment("123")

        assert seen["url"] == "https://api.processor.test/v1/payments/123"
        assert seen["auth"] == "Bearer TEST-TOKEN"
        assert resource.kind == "payment"
        assert resource.is_payment is True
        assert resource.id == "123"
        assert resource.payment_id == "123"
        assert resource.status == "approved"
        assert resource.preapproval_id == "pre_1"
        assert resource.payer_email == "payer@example.com"
        assert resource.amount == 99.5
        assert resource.date_created.utcoffset().total_seconds() == 0
        assert resource.date_created.hour == 12

    def test_get_preapproval_maps_fields(self):
        def handler(request):
            assert request.url.path == "/preapproval/pre_1"
            return httpx.Response(200, json={
                "id": "pre_1",
                "status": "authorized",
                "external_reference": "SUB-u1-p1-abc",
                "payer_email": "payer@example.com",
                "next_payment_date": "2026-11-17T00:00:00Z",
                "auto_recurring": {"transaction_amount": 1500, "currency_id": "ARS"},
            })

        resource = client_for(handler).get_preapproval("pre_1")

        assert resource.kind == "preapproval"
        assert resource.is_payment is False
        assert resource.preapproval_id == "pre_1"
        assert resource.amount == 1500
        assert resource.next_payment_date.month == 11

    def test_get_authorized_payment_maps_fields(self):
        def handler(request):
            assert request.url.path == "/authorized_payments/ap_1"
            return httpx.Response(200, json={
                "id": "ap_1",
                "preapproval_id": "pre_1",
                "transaction_amount": 1500,
                "payment": {"id": 555, "status": "approved"},
            })

        resource = client_for(handler).get_authorized_payment("ap_1")

        assert resource.kind == "authorized_payment"
        assert resource.status == "approved"
        assert resource.payment_id == "555"
        assert resource.preapproval_id == "pre_1"

    @pytest.mark.parametrize("status_code", [404, 429, 500, 503])
    def test_non_200_is_transient(self, status_code):
        client = client_for(lambda request: httpx.Response(status_code, text="nope"))

        with pytest.raises(ProcessorAPIError) as exc_info:
            client.get_payment("1")

        assert exc_info.value.status == status_code
        assert exc_info.value.retryable is True
        assert exc_info.value.stage == "fetch"

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProcessorAPIError) as exc_info:
            client_for(handler).get_preapproval("pre_1")
        assert exc_info.value.status is None

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProcessorAPIError):
            client_for(handler).get_payment("1")

    def test_invalid_json_is_transient(self):
        client = client_for(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(ProcessorAPIError):
            client.get_payment("1")

    def test_state_version_includes_last_modified(self):
        def handler(request):
            return httpx.Response(200, json={
                "id": 123,
                "status": "approved",
                "date_last_updated": "2026-10-17T09:05:00.000-03:00",
            })

        resource = client_for(handler).get_payment("123")

        assert resource.last_modified.hour == 12
        assert resource.state_version == "approved@2026-10-17T12:05:00+00:00"

    def test_state_version_without_last_modified_is_status(self):
        client = client_for(lambda request: httpx.Response(200, json={"id": "pre_1", "status": "paused"}))
        assert client.get_preapproval("pre_1").state_version == "paused"
