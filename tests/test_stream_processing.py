"""Tests for single-stream processing with retry and fallback."""

from __future__ import annotations

import asyncio

from session_classifier.pipeline.stream_processing import (
    StreamProcessor,
    extract_new_classifications,
    retry_delay_seconds,
)
from session_classifier.pipeline.validation import create_fallback_results
from session_classifier.schemas import (
    AnalysisMetadata,
    BatchAnalysisResult,
    ExistingClassifications,
    Message,
    Session,
    SessionFacts,
    SessionWithFacts,
    StreamConfig,
)


def _session(session_id: str) -> Session:
    return Session(
        session_id=session_id,
        user_id=f"user-{session_id}",
        messages=[Message(role="user", text="Where is my claim payment?")],
    )


def _item(session_id: str, intent: str = "Claim Status") -> dict:
    return {
        "session_id": session_id,
        "user_id": f"user-{session_id}",
        "general_intent": intent,
        "session_outcome": "Contained",
        "transfer_reason": "",
        "drop_off_location": "",
        "notes": "Bot answered.",
    }


class _ScriptedAnalyzer:
    """Return queued responses in order; an Exception entry is raised instead."""

    def __init__(self, responses: list):
        self.responses = list(responses)
        self.calls: list[list[str]] = []

    def analyze_batch(self, sessions, existing, api_key, model_id, additional_context=None):
        self.calls.append([session.session_id for session in sessions])
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class _EchoAnalyzer:
    """Classify every session it receives."""

    def __init__(self, intent: str = "Claim Status"):
        self.intent = intent
        self.calls: list[list[str]] = []
        self.existing: list[ExistingClassifications] = []

    def analyze_batch(self, sessions, existing, api_key, model_id, additional_context=None):
        self.calls.append([session.session_id for session in sessions])
        self.existing.append(existing.clone())
        return BatchAnalysisResult(
            sessions=[_item(session.session_id, self.intent) for session in sessions],
            prompt_tokens=40,
            completion_tokens=10,
            total_tokens=50,
            model=model_id,
        )


class _FailingAnalyzer:
    def __init__(self):
        self.call_count = 0

    def analyze_batch(self, sessions, existing, api_key, model_id, additional_context=None):
        self.call_count += 1
        raise RuntimeError("upstream unavailable")


class _BrokenEstimator:
    def calculate_token_estimation(self, sessions, model_id):
        raise RuntimeError("estimator exploded")


class _RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _config(sessions: list[Session], **overrides) -> StreamConfig:
    values = {
        "stream_id": 1,
        "sessions": sessions,
        "base_classifications": ExistingClassifications(),
        "model_id": "gpt-4o-mini",
        "api_key": "test",
        "retry_attempts": 3,
    }
    values.update(overrides)
    return StreamConfig(**values)


class TestProcessStream:
    def test_missing_session_is_recovered_by_one_retry(self):
        analyzer = _ScriptedAnalyzer(
            [
                BatchAnalysisResult(sessions=[_item("u1")], total_tokens=30, model="gpt-4o-mini"),
                BatchAnalysisResult(sessions=[_item("u2")], total_tokens=20, model="gpt-4o-mini"),
            ]
        )
        sleep = _RecordingSleep()
        processor = StreamProcessor(analyzer, sleep=sleep)

        result = asyncio.run(processor.process_stream(_config([_session("u1"), _session("u2")])))

        assert analyzer.calls == [["u1", "u2"], ["u2"]]
        assert [s.session_id for s in result.processed_sessions] == ["u1", "u2"]
        assert result.retry_attempts == 1
        assert result.token_usage.total_tokens == 50
        assert result.validation_results[0].missing_count == 1
        assert result.validation_results[-1].all_sessions_processed is True
        assert not any(s.analysis_metadata.is_fallback for s in result.processed_sessions)
        assert sleep.delays == []

    def test_always_failing_call_exhausts_retries_then_falls_back(self):
        analyzer = _FailingAnalyzer()
        sleep = _RecordingSleep()
        processor = StreamProcessor(analyzer, sleep=sleep)
        sessions = [_session("u1"), _session("u2")]

        result = asyncio.run(processor.process_stream(_config(sessions)))

        assert analyzer.call_count == 4
        assert result.retry_attempts == 3
        assert result.token_usage.total_tokens == 0
        assert len(result.processed_sessions) == 2
        assert all(s.analysis_metadata.is_fallback for s in result.processed_sessions)
        assert result.processed_sessions[0].facts.notes == (
            "Validation failed: Failed after 3 retry attempts"
        )
        assert sleep.delays == [2.0, 4.0]
        assert result.new_classifications.is_empty()

    def test_zero_retry_budget_falls_back_immediately(self):
        analyzer = _FailingAnalyzer()
        processor = StreamProcessor(analyzer, sleep=_RecordingSleep())

        result = asyncio.run(
            processor.process_stream(_config([_session("u1")], retry_attempts=0))
        )

        assert analyzer.call_count == 1
        assert result.retry_attempts == 0
        assert result.processed_sessions[0].analysis_metadata.is_fallback

    def test_batches_respect_max_sessions_per_call(self):
        analyzer = _EchoAnalyzer()
        processor = StreamProcessor(analyzer)
        sessions = [_session(f"u{i}") for i in range(12)]

        result = asyncio.run(processor.process_stream(_config(sessions, max_sessions_per_call=5)))

        assert [len(call) for call in analyzer.calls] == [5, 5, 2]
        assert [s.session_id for s in result.processed_sessions] == [s.session_id for s in sessions]
        assert [s.analysis_metadata.batch_number for s in result.processed_sessions][-2:] == [3, 3]
        assert result.token_usage.total_tokens == 150

    def test_progress_callback(self):
        processor = StreamProcessor(_EchoAnalyzer())
        updates: list[tuple[int, int, int, int]] = []
        sessions = [_session(f"u{i}") for i in range(4)]

        asyncio.run(
            processor.process_stream(
                _config(sessions, stream_id=7, max_sessions_per_call=2),
                lambda *args: updates.append(args),
            )
        )

        assert updates[0] == (7, 0, 4, 0)
        assert updates[1] == (7, 2, 4, 50)
        assert updates[-1] == (7, 4, 4, 100)

    def test_new_labels_exclude_base(self):
        processor = StreamProcessor(_EchoAnalyzer(intent="Billing Dispute"))
        base = ExistingClassifications(general_intent={"Claim Status"})

        result = asyncio.run(
            processor.process_stream(_config([_session("u1")], base_classifications=base))
        )
        assert result.new_classifications.general_intent == {"Billing Dispute"}

        processor = StreamProcessor(_EchoAnalyzer(intent="Claim Status"))
        result = asyncio.run(
            processor.process_stream(_config([_session("u1")], base_classifications=base))
        )
        assert result.new_classifications.is_empty()

    def test_every_batch_sends_the_base_labels(self):
        analyzer = _EchoAnalyzer(intent="Billing Dispute")
        base = ExistingClassifications(general_intent={"Claim Status"})
        sessions = [_session(f"u{i}") for i in range(4)]

        result = asyncio.run(
            StreamProcessor(analyzer).process_stream(
                _config(sessions, base_classifications=base, max_sessions_per_call=2)
            )
        )

        assert len(analyzer.existing) == 2
        assert all(sent.general_intent == {"Claim Status"} for sent in analyzer.existing)
        assert result.new_classifications.general_intent == {"Billing Dispute"}

    def test_non_object_entry_only_retries_its_session(self):
        analyzer = _ScriptedAnalyzer(
            [
                BatchAnalysisResult(
                    sessions=[_item("u1"), "garbage"], total_tokens=30, model="gpt-4o-mini"
                ),
                BatchAnalysisResult(sessions=[_item("u2")], total_tokens=20, model="gpt-4o-mini"),
            ]
        )
        processor = StreamProcessor(analyzer, sleep=_RecordingSleep())

        result = asyncio.run(processor.process_stream(_config([_session("u1"), _session("u2")])))

        assert analyzer.calls == [["u1", "u2"], ["u2"]]
        assert result.token_usage.total_tokens == 50
        assert result.validation_results[0].processed_count == 1
        assert "malformed" in result.validation_results[0].error_kinds
        assert not any(s.analysis_metadata.is_fallback for s in result.processed_sessions)

    def test_unexpected_failure_yields_fallback_stream(self):
        processor = StreamProcessor(_EchoAnalyzer(), token_estimator=_BrokenEstimator())
        sessions = [_session("u1"), _session("u2")]

        result = asyncio.run(processor.process_stream(_config(sessions, retry_attempts=2)))

        assert result.retry_attempts == 2
        assert len(result.processed_sessions) == 2
        assert all(s.analysis_metadata.is_fallback for s in result.processed_sessions)
        assert "estimator exploded" in result.validation_results[0].validation_errors[0]

    def test_empty_stream(self):
        analyzer = _EchoAnalyzer()
        result = asyncio.run(StreamProcessor(analyzer).process_stream(_config([])))
        assert result.processed_sessions == []
        assert analyzer.calls == []


def test_retry_delay_schedule():
    assert retry_delay_seconds(1) == 0.0
    assert retry_delay_seconds(2) == 2.0
    assert retry_delay_seconds(3) == 4.0
    assert retry_delay_seconds(3, base_delay=0.5) == 2.0


def test_extract_new_classifications_skips_fallbacks():
    real = SessionWithFacts.from_session(
        _session("u1"),
        facts=SessionFacts(
            general_intent="Provider Lookup",
            session_outcome="Transfer",
            transfer_reason="Invalid Provider",
            drop_off_location="Provider ID Prompt",
        ),
        analysis_metadata=AnalysisMetadata(batch_number=1, model="gpt-4o-mini"),
    )
    fallback = create_fallback_results([_session("u2")], "boom")[0]

    new = extract_new_classifications([real, fallback], ExistingClassifications())

    assert new.general_intent == {"Provider Lookup"}
    assert new.transfer_reason == {"Invalid Provider"}
    assert new.drop_off_location == {"Provider ID Prompt"}
