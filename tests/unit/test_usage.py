from agents.types import Usage, UsageEvent
from services.usage import BestEffortUsageReporter, CollectingUsageReporter, NullUsageReporter, report_usage


def test_collecting_reporter_sums_tokens():
    reporter = CollectingUsageReporter()
    report_usage(reporter, source="interview_turn", model="m", usage=Usage(total_tokens=10))
    report_usage(reporter, source="interview_turn_regeneration", model="m", usage=None)
    report_usage(reporter, source="generate_consent_question_only", model=None, usage=Usage(total_tokens=5))
    assert [event.source for event in reporter.events] == [
        "interview_turn",
        "interview_turn_regeneration",
        "generate_consent_question_only",
    ]
    assert reporter.total_tokens() == 15


def test_reporting_never_raises():
    class Broken:
        def report(self, event):
            raise RuntimeError("billing down")

    report_usage(Broken(), source="interview_turn", model="m", usage=None)
    report_usage(None, source="interview_turn", model="m", usage=None)
    NullUsageReporter().report(UsageEvent(source="x"))


def test_best_effort_reporter_forwards_and_swallows_sink_errors():
    seen = []
    BestEffortUsageReporter(seen.append).report(UsageEvent(source="interview_turn"))
    assert seen[0].source == "interview_turn"

    def broken(_event):
        raise RuntimeError("sink down")

    BestEffortUsageReporter(broken).report(UsageEvent(source="interview_turn"))
