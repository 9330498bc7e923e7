import json
from pathlib import Path

from pydantic import TypeAdapter

from shared.contracts.models import DoseDueEvent, NotificationMessage, RiskPrediction, ScheduleEvent


EXAMPLES_DIR = Path(__file__).resolve().parents[1] / "shared" / "contracts" / "examples"
SCHEDULE_EVENT_ADAPTER = TypeAdapter(ScheduleEvent)


def _read_example(name: str) -> dict:
    return json.loads((EXAMPLES_DIR / name).read_text())


def test_dose_due_example_validates() -> None:
    parsed = DoseDueEvent.model_validate(_read_example("event_dose_due.json"))
    assert parsed.event_id.startswith("evt_")
    assert parsed.medication_name == "Metformin"


def test_schedule_event_examples_validate() -> None:
    for event_file in ["event_schedule_created.json", "event_schedule_deleted.json"]:
        parsed = SCHEDULE_EVENT_ADAPTER.validate_python(_read_example(event_file))
        assert parsed.event_id.startswith("evt_")


def test_notification_message_example_validates() -> None:
    parsed = NotificationMessage.model_validate(_read_example("notification_message.json"))
    assert parsed.channel.value == "email"


def test_risk_prediction_example_validates() -> None:
    parsed = RiskPrediction.model_validate(_read_example("risk_prediction.json"))
    assert parsed.risk_level.value == "MEDIUM"
