from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.exceptions import PersistenceError, ProviderError
from chatbot_core.domain.models import ChatUsage
from chatbot_core.engine.usage_recorder import UsageRecorder, estimate_tokens


class MemoryUsageStore:
    def __init__(self, fail=False):
        self.records = []
        self.fail = fail

    def record(self, usage):
        if self.fail:
            raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")
        usage.id = len(self.records) + 1
        self.records.append(usage)
        return usage

    def list_by_user(self, user_id):
        return [r for r in self.records if r.user_id == user_id]


MODEL = AIModel(id=1, name="glm-4", display_name="GLM-4", provider="zhipu", cost_per_1k_tokens=0.1)


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcdefgh") == 2
    assert estimate_tokens("abc") == 0


def test_usage_success_with_estimates():
    store = MemoryUsageStore()
    tracker = UsageRecorder(store).begin(42, MODEL, "x" * 40)
    rec = tracker.succeed("y" * 400, None, message_id=9)

    assert rec.status == "success"
    assert (rec.prompt_tokens, rec.completion_tokens, rec.total_tokens) == (10, 100, 110)
    assert rec.message_id == 9
    assert rec.cost == 0.011
    assert rec.error_msg == ""


def test_usage_prefers_vendor_counts():
    store = MemoryUsageStore()
    tracker = UsageRecorder(store).begin(42, MODEL, "x" * 40)
    rec = tracker.succeed("y" * 400, ChatUsage(prompt_tokens=3, completion_tokens=4, total_tokens=7))
    assert (rec.prompt_tokens, rec.completion_tokens, rec.total_tokens) == (3, 4, 7)


def test_usage_recorded_once_under_race():
    store = MemoryUsageStore()
    tracker = UsageRecorder(store).begin(42, MODEL, "hello")
    assert tracker.fail(ProviderError(code="API_ERROR", message="upstream 500")) is not None
    assert tracker.fail(ProviderError(code="STREAM_CANCELLED", message="cancelled")) is None
    assert tracker.succeed("late", None) is None

    assert len(store.records) == 1
    assert store.records[0].status == "error"
    assert store.records[0].error_msg == "upstream 500"


def test_usage_store_failure_is_swallowed():
    tracker = UsageRecorder(MemoryUsageStore(fail=True)).begin(42, MODEL, "hello")
    assert tracker.succeed("ok", None) is None
    assert tracker.recorded
