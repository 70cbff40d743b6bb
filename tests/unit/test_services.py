"""Unit tests for service implementations."""

import asyncio
from pathlib import Path

import pytest

from compress_pipeline.core.exceptions import (
    AccountError,
    ClientError,
    ConfigurationError,
    FileSystemError,
    ServerError,
)
from compress_pipeline.core.models import (
    BackupAction,
    BatchLimits,
    ConvertFormat,
    ErrorKind,
    FailureOutcome,
    ItemStage,
    ProcessingConfig,
    ResizeSpec,
    SkipReason,
    SuccessOutcome,
    TransformOptions,
    WorkItem,
)
from compress_pipeline.core.observability import MetricsCollector
from compress_pipeline.core.registry import CredentialRegistry
from compress_pipeline.core.services import BatchOrchestrator, ItemProcessingService
from compress_pipeline.processors.circuit_breaker import CircuitBreaker, CircuitState
from compress_pipeline.processors.governor import ConcurrencyGovernor
from compress_pipeline.testing.fakes import (
    FakeLogger,
    FakeTransformClient,
    create_test_credential,
    write_test_image,
)

FAST_CONFIG = ProcessingConfig(base_delay_ms=0, retry_initial_delay_s=0)


@pytest.fixture
def credential():
    return create_test_credential("primary")


@pytest.fixture
def client():
    return FakeTransformClient()


@pytest.fixture
def image(tmp_path):
    return write_test_image(tmp_path / "photo.jpg", 200, 150)


def _service(client, config=FAST_CONFIG, **kwargs):
    return ItemProcessingService(client=client, config=config, logger=FakeLogger(), **kwargs)


def _item(path, **options):
    return WorkItem(source_path=path, size=path.stat().st_size, options=TransformOptions(**options))


class TestItemProcessingService:
    """Tests for the per-item safety protocol."""

    @pytest.mark.asyncio
    async def test_success_installs_result_and_keeps_backup(self, client, credential, image):
        original = image.read_bytes()
        metrics = MetricsCollector()
        service = _service(client, metrics_collector=metrics)

        outcome = await service.process_item(0, _item(image), credential)

        assert isinstance(outcome, SuccessOutcome)
        assert outcome.result_path == image
        assert outcome.original_size == len(original)
        assert outcome.result_size == image.stat().st_size
        assert outcome.usage_count == 1
        assert outcome.credential_name == "primary"
        assert outcome.attempts == 1
        assert outcome.backup.action == BackupAction.CREATED
        assert outcome.backup.path == image.parent / "original" / "photo.jpg"
        assert outcome.backup.path.read_bytes() == original
        assert metrics.get_summary("transform")["total_operations"] == 1

    @pytest.mark.asyncio
    async def test_validation_failure_never_calls_service(self, client, credential, tmp_path):
        missing = tmp_path / "missing.jpg"
        outcome = await _service(client).process_item(3, WorkItem(source_path=missing), credential)

        assert isinstance(outcome, FailureOutcome)
        assert outcome.index == 3
        assert outcome.error_kind == ErrorKind.VALIDATION
        assert outcome.stage == ItemStage.VALIDATED
        assert outcome.backup is None
        assert client.call_count == 0
        assert not (tmp_path / "original").exists()

    @pytest.mark.asyncio
    async def test_rejected_input_leaves_original_untouched(self, client, credential, image):
        original = image.read_bytes()
        client.set_failure_mode(ClientError("Input file is not an image", 415))

        outcome = await _service(client).process_item(0, _item(image), credential)

        assert outcome.error_kind == ErrorKind.INVALID_INPUT
        assert outcome.stage == ItemStage.BACKED_UP
        assert outcome.attempts == 1
        assert image.read_bytes() == original
        assert outcome.backup.path.read_bytes() == original

    @pytest.mark.asyncio
    async def test_rerun_after_failure_reuses_identical_backup(self, client, credential, image):
        service = _service(client)
        client.set_failure_mode(ClientError("Input file is not an image", 415), times=1)

        first = await service.process_item(0, _item(image), credential)
        second = await service.process_item(0, _item(image), credential)

        assert isinstance(first, FailureOutcome)
        assert isinstance(second, SuccessOutcome)
        assert second.backup.action == BackupAction.SKIPPED
        assert sorted(p.name for p in (image.parent / "original").iterdir()) == ["photo.jpg"]

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, client, credential, image):
        client.set_failure_mode(ServerError("Service unavailable", 503), times=2)
        breaker = CircuitBreaker(failure_threshold=5)

        outcome = await _service(client, circuit_breaker=breaker).process_item(0, _item(image), credential)

        assert isinstance(outcome, SuccessOutcome)
        assert outcome.attempts == 3
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_report_transient(self, client, credential, image):
        client.set_failure_mode(ServerError("Service unavailable", 503))
        breaker = CircuitBreaker(failure_threshold=5)

        outcome = await _service(client, circuit_breaker=breaker).process_item(0, _item(image), credential)

        assert outcome.error_kind == ErrorKind.TRANSIENT
        assert outcome.attempts == 3
        assert breaker.consecutive_failures == 3

    @pytest.mark.asyncio
    async def test_open_circuit_stops_retries(self, client, credential, image):
        client.set_failure_mode(ServerError("Service unavailable", 503))
        breaker = CircuitBreaker(failure_threshold=1, cooldown_s=60)

        outcome = await _service(client, circuit_breaker=breaker).process_item(0, _item(image), credential)

        assert outcome.error_kind == ErrorKind.TRANSIENT
        assert outcome.attempts == 1
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_only_the_trial_item_closes_a_half_open_circuit(self, client, credential, image):
        breaker = CircuitBreaker(failure_threshold=1, cooldown_s=0)
        breaker.record_failure()
        assert breaker.allow_request()
        service = _service(client, circuit_breaker=breaker)

        straggler = await service.process_item(0, _item(image), credential)
        assert isinstance(straggler, SuccessOutcome)
        assert breaker.state == CircuitState.HALF_OPEN

        trial = await service.process_item(0, _item(image), credential, trial=True)
        assert isinstance(trial, SuccessOutcome)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_account_errors_do_not_trip_breaker(self, client, credential, image):
        client.set_failure_mode(AccountError("Your monthly limit has been exceeded", 429))
        breaker = CircuitBreaker(failure_threshold=1)

        outcome = await _service(client, circuit_breaker=breaker).process_item(0, _item(image), credential)

        assert outcome.error_kind == ErrorKind.QUOTA_EXCEEDED
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_request_timeout_is_transient(self, client, credential, image):
        client.set_delay(0.5)
        config = ProcessingConfig(retry_attempts=1, request_timeout_s=0.02, base_delay_ms=0)

        outcome = await _service(client, config=config).process_item(0, _item(image), credential)

        assert outcome.error_kind == ErrorKind.TRANSIENT
        assert outcome.stage == ItemStage.BACKED_UP

    @pytest.mark.asyncio
    async def test_conversion_removes_source_after_install(self, client, credential, image):
        original = image.read_bytes()

        outcome = await _service(client).process_item(
            0, _item(image, format_target=ConvertFormat(format="png")), credential
        )

        assert isinstance(outcome, SuccessOutcome)
        assert outcome.result_path == image.with_suffix(".png")
        assert outcome.result_path.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"
        assert not image.exists()
        assert outcome.backup.path.read_bytes() == original

    @pytest.mark.asyncio
    async def test_resize_request_sent_for_oversized_image(self, client, credential, image):
        await _service(client).process_item(0, _item(image, resize=ResizeSpec(max_size=100)), credential)
        assert client.calls[0]["resize"] == {"method": "scale", "width": 100}

    @pytest.mark.asyncio
    async def test_no_resize_request_when_image_fits(self, client, credential, image):
        await _service(client).process_item(0, _item(image, resize=ResizeSpec(max_size=400)), credential)
        assert client.calls[0]["resize"] is None

    @pytest.mark.asyncio
    async def test_install_failure_discards_temp_file(self, client, credential, image, monkeypatch):
        original = image.read_bytes()

        def failing_install(temp_path, destination):
            raise FileSystemError("atomic_install failed: disk full")

        monkeypatch.setattr("compress_pipeline.core.services.atomic_install", failing_install)
        outcome = await _service(client).process_item(0, _item(image), credential)

        assert outcome.error_kind == ErrorKind.FILE_SYSTEM
        assert outcome.stage == ItemStage.TRANSFORMED
        assert image.read_bytes() == original
        assert list(image.parent.glob(".*.tmp")) == []


class ScriptedItemService:
    """Item service stand-in whose outcome per index is scripted."""

    def __init__(self, failures=None, delay=0.0):
        self.failures = dict(failures or {})
        self.delay = delay
        self.calls = []
        self.usage = {}
        self.metrics = None

    async def process_item(self, index, item, credential, trial=False):
        self.calls.append((index, credential.name))
        await asyncio.sleep(self.delay)
        kind = self.failures.get(index)
        if kind is not None:
            return FailureOutcome(
                index=index,
                source_path=item.source_path,
                error_kind=kind,
                message=f"scripted {kind.value}",
                stage=ItemStage.BACKED_UP,
                credential_name=credential.name,
            )
        used = self.usage.get(credential.name, credential.used_count) + 1
        self.usage[credential.name] = used
        return SuccessOutcome(
            index=index,
            source_path=item.source_path,
            result_path=item.source_path,
            original_size=100,
            result_size=60,
            elapsed=0.0,
            usage_count=used,
            credential_name=credential.name,
        )


def _items(count):
    return [WorkItem(source_path=Path(f"/images/photo{i}.jpg"), size=100) for i in range(count)]


def _orchestrator(registry, service, max_concurrent=1, **config_kwargs):
    config = ProcessingConfig(max_concurrent=max_concurrent, base_delay_ms=0, **config_kwargs)
    governor = ConcurrencyGovernor(max_concurrent=max_concurrent, adaptive_throttling=False, base_delay_ms=0)
    return BatchOrchestrator(registry, service, governor, config, FakeLogger())


class TestBatchOrchestrator:
    """Tests for dispatch, quota reservation and stop conditions."""

    @pytest.mark.asyncio
    async def test_dispatch_stops_at_remaining_quota(self):
        registry = CredentialRegistry([create_test_credential("primary", used_count=496)])
        service = ScriptedItemService(delay=0.01)

        result = await _orchestrator(registry, service, max_concurrent=3).run(_items(10), "primary")

        assert sorted(o.index for o in result.successful) == [0, 1, 2, 3]
        assert [o.index for o in result.skipped] == [4, 5, 6, 7, 8, 9]
        assert all(o.reason == SkipReason.QUOTA_EXCEEDED for o in result.skipped)
        assert result.stop_reason == SkipReason.QUOTA_EXCEEDED
        assert result.aborted
        assert result.final_usage == {"primary": 500}
        assert sorted(index for index, _ in service.calls) == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_every_item_succeeds_with_capacity(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        orchestrator = _orchestrator(registry, ScriptedItemService(), max_concurrent=2)

        result = await orchestrator.run(_items(5), "best")

        assert len(result.successful) == 5
        assert not result.aborted
        assert result.total_savings == 200
        assert result.max_concurrent == 2
        snapshot = orchestrator.progress.snapshot()
        assert (snapshot.processed, snapshot.successful) == (5, 5)

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        result = await _orchestrator(registry, ScriptedItemService()).run([], "best")
        assert result.total_items == 0
        assert result.outcomes == []

    @pytest.mark.asyncio
    async def test_unknown_credential(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        with pytest.raises(ConfigurationError, match="'other' not found"):
            await _orchestrator(registry, ScriptedItemService()).run(_items(1), "other")

    @pytest.mark.asyncio
    async def test_exhausted_named_credential_skips_everything(self):
        registry = CredentialRegistry([create_test_credential("primary", used_count=500)])
        service = ScriptedItemService()

        result = await _orchestrator(registry, service).run(_items(3), "primary")

        assert [o.reason for o in result.skipped] == [SkipReason.QUOTA_EXCEEDED] * 3
        assert service.calls == []

    @pytest.mark.asyncio
    async def test_invalid_named_credential_skips_everything(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        registry.mark_invalid("primary")

        result = await _orchestrator(registry, ScriptedItemService()).run(_items(2), "primary")

        assert result.stop_reason == SkipReason.INVALID_CREDENTIAL
        assert len(result.skipped) == 2

    @pytest.mark.asyncio
    async def test_rejected_credential_stops_dispatch(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        service = ScriptedItemService(failures={1: ErrorKind.INVALID_CREDENTIAL})

        result = await _orchestrator(registry, service).run(_items(5), "primary")

        assert [o.index for o in result.successful] == [0]
        assert [o.index for o in result.failed] == [1]
        assert [o.index for o in result.skipped] == [2, 3, 4]
        assert result.stop_reason == SkipReason.INVALID_CREDENTIAL
        assert registry.get("primary").status.value == "invalid"

    @pytest.mark.asyncio
    async def test_quota_error_marks_credential_exhausted(self):
        registry = CredentialRegistry([create_test_credential("primary", used_count=10)])
        service = ScriptedItemService(failures={0: ErrorKind.QUOTA_EXCEEDED})

        result = await _orchestrator(registry, service).run(_items(3), "primary")

        assert result.stop_reason == SkipReason.QUOTA_EXCEEDED
        assert [o.index for o in result.skipped] == [1, 2]
        assert registry.get("primary").remaining == 0

    @pytest.mark.asyncio
    async def test_failover_switches_to_next_best_credential(self):
        registry = CredentialRegistry(
            [
                create_test_credential("alpha", used_count=497),
                create_test_credential("beta", used_count=498),
            ]
        )
        service = ScriptedItemService()

        result = await _orchestrator(registry, service, credential_failover=True).run(_items(6), "best")

        assert [name for _, name in service.calls] == ["alpha"] * 3 + ["beta"] * 2
        assert [o.index for o in result.skipped] == [5]
        assert result.final_usage == {"alpha": 500, "beta": 500}

    @pytest.mark.asyncio
    async def test_no_failover_by_default(self):
        registry = CredentialRegistry(
            [
                create_test_credential("alpha", used_count=497),
                create_test_credential("beta", used_count=498),
            ]
        )
        service = ScriptedItemService()

        result = await _orchestrator(registry, service).run(_items(6), "best")

        assert {name for _, name in service.calls} == {"alpha"}
        assert [o.index for o in result.skipped] == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_named_selection_never_fails_over(self):
        registry = CredentialRegistry(
            [
                create_test_credential("alpha", used_count=499),
                create_test_credential("beta"),
            ]
        )
        service = ScriptedItemService()

        result = await _orchestrator(registry, service, credential_failover=True).run(_items(3), "alpha")

        assert {name for _, name in service.calls} == {"alpha"}
        assert len(result.skipped) == 2

    @pytest.mark.asyncio
    async def test_max_items_limit(self):
        registry = CredentialRegistry([create_test_credential("primary")])

        result = await _orchestrator(registry, ScriptedItemService()).run(
            _items(5), "primary", limits=BatchLimits(max_items=2)
        )

        assert len(result.successful) == 2
        assert [o.reason for o in result.skipped] == [SkipReason.LIMIT_REACHED] * 3

    @pytest.mark.asyncio
    async def test_max_failures_limit(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        service = ScriptedItemService(failures={i: ErrorKind.INVALID_INPUT for i in range(5)})

        result = await _orchestrator(registry, service).run(
            _items(5), "primary", limits=BatchLimits(max_failures=2)
        )

        assert len(result.failed) == 2
        assert [o.index for o in result.skipped] == [2, 3, 4]
        assert result.stop_reason == SkipReason.LIMIT_REACHED

    @pytest.mark.asyncio
    async def test_item_failures_do_not_stop_batch(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        service = ScriptedItemService(failures={1: ErrorKind.INVALID_INPUT, 3: ErrorKind.TRANSIENT})

        result = await _orchestrator(registry, service, max_concurrent=2).run(_items(5), "primary")

        assert len(result.successful) == 3
        assert sorted(o.index for o in result.failed) == [1, 3]
        assert result.skipped == []
        assert result.stop_reason is None

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failure(self):
        registry = CredentialRegistry([create_test_credential("primary")])

        class BrokenService(ScriptedItemService):
            async def process_item(self, index, item, credential, trial=False):
                raise RuntimeError("unexpected")

        orchestrator = _orchestrator(registry, BrokenService())
        result = await orchestrator.run(_items(2), "primary")

        assert [o.error_kind for o in result.failed] == [ErrorKind.UNKNOWN] * 2
        assert orchestrator.governor.active == 0

    @pytest.mark.asyncio
    async def test_chunks_cover_every_item(self):
        registry = CredentialRegistry([create_test_credential("primary")])
        service = ScriptedItemService()
        orchestrator = _orchestrator(registry, service, max_concurrent=1, chunk_multiplier=2)

        result = await orchestrator.run(_items(5), "primary")

        assert len(result.successful) == 5
        assert [index for index, _ in service.calls] == [0, 1, 2, 3, 4]
