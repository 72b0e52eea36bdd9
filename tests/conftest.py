import httpx
import pytest

from adminapi.client import AdminApiClient, create_client
from adminapi.env import Settings
from auth.token_store import Credentials, MemoryCredentialStore
from tests.helpers import BASE_URL, FakeAdminApi, SleepRecorder


@pytest.fixture
def fake_api() -> FakeAdminApi:
    return FakeAdminApi()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials.issue("access-1", "refresh-1", {"memberShipId": "admin"})


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def build_client(fake_api, credentials, sleep):
    session_invalid: list[int] = []

    def _build(**overrides) -> AdminApiClient:
        settings = Settings(
            base_url=BASE_URL,
            chunk_size=overrides.pop("chunk_size", 5),
            max_upload_bytes=overrides.pop("max_upload_bytes", 2 * 1024 * 1024 * 1024),
            max_refresh_retries=overrides.pop("max_refresh_retries", 3),
            debug=False,
        )
        store = overrides.pop("store", None) or MemoryCredentialStore(credentials)
        transport = httpx.MockTransport(fake_api.handler)
        client = create_client(
            settings,
            store=store,
            on_session_invalid=lambda: session_invalid.append(1),
            api_transport=transport,
            transfer_transport=transport,
            sleep=sleep,
        )
        client.session_invalid_signals = session_invalid
        return client

    return _build
