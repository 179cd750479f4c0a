"""Provider client tests"""
import json
import httplib2
import httpx
import pytest
from unittest.mock import MagicMock
from googleapiclient.errors import HttpError

from paysync.core.exceptions import (
    PaymentVerificationError,
    ProviderAuthError,
    ProviderUnavailableError,
)
from paysync.services.paystack_client import PaystackClient
from paysync.services.play_client import GooglePlayClient


def paystack_with(handler) -> PaystackClient:
    return PaystackClient("sk_test", base_url="https://api.paystack.test", transport=httpx.MockTransport(handler))


@pytest.mark.high
class TestPaystackClient:
    """Test Paystack HTTP handling"""

    def test_verify_returns_transaction_data(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={
                "status": True,
                "message": "Verification successful",
                "data": {"status": "success", "reference": "ref_1", "amount": 9900},
            })

        data = paystack_with(handler).verify("ref_1")

        assert data["status"] == "success"
        assert seen["path"] == "/transaction/verify/ref_1"
        assert seen["auth"] == "Bearer sk_test"

    def test_reference_is_encoded_as_one_path_segment(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["raw_path"] = request.url.raw_path
            return httpx.Response(200, json={"status": True, "data": {"status": "success"}})

        paystack_with(handler).verify("ref/1?x=1#y")

        assert seen["raw_path"] == b"/transaction/verify/ref%2F1%3Fx%3D1%23y"

    def test_unknown_reference_is_verification_error(self):
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})

        with pytest.raises(PaymentVerificationError) as exc_info:
            paystack_with(handler).verify("nope")

        assert "not found" in exc_info.value.details

    def test_rejected_key_is_auth_error(self):
        with pytest.raises(ProviderAuthError):
            paystack_with(lambda request: httpx.Response(401, json={"status": False})).verify("ref")

    def test_server_error_and_timeout_are_retryable(self):
        with pytest.raises(ProviderUnavailableError):
            paystack_with(lambda request: httpx.Response(502, text="bad gateway")).verify("ref")

        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderUnavailableError):
            paystack_with(timeout).verify("ref")

    def test_initialize_transaction_sends_metadata(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "data": {"authorization_url": "https://checkout.test/x", "access_code": "ac", "reference": "r"},
            })

        data = paystack_with(handler).initialize_transaction(
            "a@example.com", 9900, "ZAR", {"accountId": "acct_1", "days": 30}
        )

        assert data["authorization_url"] == "https://checkout.test/x"
        assert captured["body"]["amount"] == 9900
        assert captured["body"]["metadata"] == {"accountId": "acct_1", "days": 30}


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "x"}}')


@pytest.mark.high
class TestGooglePlayClient:
    """Test Android Publisher error mapping"""

    def _client(self, execute_side_effect=None, execute_return=None):
        service = MagicMock()
        request = service.purchases.return_value.subscriptionsv2.return_value.get.return_value
        if execute_side_effect is not None:
            request.execute.side_effect = execute_side_effect
        else:
            request.execute.return_value = execute_return
        return GooglePlayClient(service, default_package_name="com.example"), service

    def test_get_subscription_returns_resource(self):
        client, service = self._client(execute_return={"subscriptionState": "SUBSCRIPTION_STATE_ACTIVE"})

        assert client.get_subscription("com.example", "tok")["subscriptionState"] == "SUBSCRIPTION_STATE_ACTIVE"
        service.purchases.return_value.subscriptionsv2.return_value.get.assert_called_once_with(
            packageName="com.example", token="tok"
        )

    def test_not_found_returns_none(self):
        for status in (400, 404, 410):
            client, _ = self._client(execute_side_effect=http_error(status))
            assert client.get_subscription("com.example", "tok") is None

    def test_permission_denied_is_auth_error(self):
        client, _ = self._client(execute_side_effect=http_error(403))

        with pytest.raises(ProviderAuthError):
            client.get_subscription("com.example", "tok")

    def test_server_error_and_transport_failure_are_retryable(self):
        client, _ = self._client(execute_side_effect=http_error(503))
        with pytest.raises(ProviderUnavailableError):
            client.get_subscription("com.example", "tok")

        client, _ = self._client(execute_side_effect=TimeoutError("timed out"))
        with pytest.raises(ProviderUnavailableError):
            client.get_subscription("com.example", "tok")

    def test_acknowledge_sends_empty_body(self):
        service = MagicMock()
        client = GooglePlayClient(service)

        client.acknowledge_subscription("com.example", "premium_monthly", "tok")

        service.purchases.return_value.subscriptions.return_value.acknowledge.assert_called_once_with(
            packageName="com.example", subscriptionId="premium_monthly", token="tok", body={}
        )
