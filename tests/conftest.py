import pytest

from text_humanizer import config
from text_humanizer.db import init_db
from text_humanizer.humanizer_client import DocumentStatus
from text_humanizer.ledger import CreditLedger


class FakeHumanizerClient:
    """Scripted stand-in for the humanization service.

    ``poll_script`` items are consumed one per poll: a string is returned as
    the output, ``None`` means still processing, an exception is raised.
    """

    def __init__(self, poll_script: list | None = None) -> None:
        self.poll_script = list(poll_script or [])
        self.submit_error: Exception | None = None
        self.rederive_error: Exception | None = None
        self.submitted: list[tuple[str, dict]] = []
        self.polled: list[str] = []
        self.rederived: list[str] = []
        self._next_id = 0

    def _new_id(self) -> str:
        self._next_id += 1
        return f"ud-{self._next_id}"

    async def submit(self, text, job_settings) -> str:
        self.submitted.append((text, job_settings.model_dump()))
        if self.submit_error:
            raise self.submit_error
        return self._new_id()

    async def poll_status(self, external_id: str) -> DocumentStatus:
        self.polled.append(external_id)
        item = self.poll_script.pop(0) if self.poll_script else None
        if isinstance(item, BaseException):
            raise item
        return DocumentStatus(external_id=external_id, output=item)

    async def request_rederivation(self, external_id: str) -> str:
        self.rederived.append(external_id)
        if self.rederive_error:
            raise self.rederive_error
        return self._new_id()

    async def check_service_credits(self) -> dict:
        return {"credits": 1000}


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setattr(config.settings, "database_path", str(tmp_path / "humanizer.db"))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "humanizer_api_key", "test-key")
    monkeypatch.setattr(config.settings, "poll_max_attempts", 12)
    monkeypatch.setattr(config.settings, "poll_interval_sec", 5.0)
    monkeypatch.setattr(config.settings, "rehumanize_charges_credits", False)
    monkeypatch.setattr(config.settings, "signup_credits", 0)

    init_db()
    yield


@pytest.fixture
def ledger() -> CreditLedger:
    return CreditLedger()


@pytest.fixture
def fake_client() -> FakeHumanizerClient:
    return FakeHumanizerClient()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()
