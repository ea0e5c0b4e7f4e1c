"""Test suite for the secret orchestration pipeline.

This test suite validates:
- Aggregated validation of unresolved references and fetch failures
- One bulk load() per connector, issued concurrently, with timeouts
- The merge pass under each conflict policy
- All-or-nothing apply() and idempotence
"""
import base64
import os
import subprocess
import sys
import textwrap
import threading
from pathlib import Path

import pytest

from secretstack.secrets.domains.env_connector import EnvConnector, StaticConnector
from secretstack.secrets.domains.errors import (
    ConfigurationError,
    ConflictError,
    FetchError,
    MergeError,
    UnresolvedReferenceError,
)
from secretstack.secrets.domains.kubernetes_provider import KubernetesSecretProvider
from secretstack.secrets.domains.models import (
    ConflictPolicy,
    OrchestratorState,
    PreparedEffect,
    SecretDeclaration,
)
from secretstack.secrets.domains.provider import Provider
from secretstack.secrets.domains.registry import SecretRegistry
from secretstack.secrets.workflows.orchestrator import Orchestrator


def b64(value):
    return base64.b64encode(value.encode("UTF-8")).decode("ascii")


class RecordingConnector(StaticConnector):
    """Static connector that records every load() call."""

    def __init__(self, values=None):
        super().__init__(values)
        self.load_calls = []

    def load(self, names):
        self.load_calls.append(set(names))
        super().load(names)


class BlockingConnector(StaticConnector):
    """Connector whose fetch waits on an event."""

    def __init__(self, values, event):
        super().__init__(values)
        self.event = event

    def _fetch(self, names):
        self.event.wait(5)
        return super()._fetch(names)


class BarrierConnector(StaticConnector):
    """Connector that only succeeds if its sibling fetches at the same time."""

    def __init__(self, values, barrier):
        super().__init__(values)
        self.barrier = barrier

    def _fetch(self, names):
        self.barrier.wait(timeout=5)
        return super()._fetch(names)


class BrokenConnector(StaticConnector):
    def _fetch(self, names):
        raise RuntimeError("connection reset")


class ConfigMapProvider(Provider):
    """Non-mergeable provider writing every secret to one shared identifier."""

    allow_merge = False

    def __init__(self):
        self.prepare_calls = 0

    def prepare(self, name, value):
        self.prepare_calls += 1
        return [PreparedEffect(
            kind="apply-resource",
            identifier="ConfigMap/default/shared",
            payload={"data": {name: value}},
        )]

    def identifier_of(self, effect):
        return effect.identifier


class StrictMergeProvider(ConfigMapProvider):
    """Mergeable provider whose merge always fails structurally."""

    allow_merge = True

    def merge(self, effects):
        raise MergeError("payload shapes differ")


@pytest.fixture
def env_connector(monkeypatch):
    monkeypatch.setenv("API_KEY", "xyz123")
    monkeypatch.setenv("DB_PASS", "hunter2")
    return EnvConnector()


@pytest.fixture
def app_registry(env_connector):
    """Registry wiring env secrets into the app-secrets Secret."""
    registry = SecretRegistry("default")
    registry.add_connector("env", env_connector)
    registry.add_provider("k8s-secret", KubernetesSecretProvider("app-secrets"))
    return registry


class TestApply:
    """Test suite for Orchestrator.apply()."""

    def test_single_secret_produces_one_secret_manifest(self, app_registry):
        """Test that one declaration yields one apply-resource effect with base64 data."""
        app_registry.add_declaration(SecretDeclaration("API_KEY", "env", "k8s-secret"))

        effects = Orchestrator([app_registry]).apply()

        assert len(effects) == 1
        effect = effects[0]
        assert effect.kind == "apply-resource"
        assert effect.identifier == "Secret/default/app-secrets"
        assert effect.payload["data"] == {"API_KEY": b64("xyz123")}
        assert effect.provider_ref == "k8s-secret"
        assert effect.origin_secret_names == frozenset({"API_KEY"})

    def test_two_secrets_same_target_are_merged(self, app_registry):
        """Test that secrets targeting the same Secret merge into one effect."""
        app_registry.add_declaration(SecretDeclaration("API_KEY"))
        app_registry.add_declaration(SecretDeclaration("DB_PASS"))

        effects = Orchestrator([app_registry]).apply()

        assert len(effects) == 1
        assert effects[0].payload["data"] == {
            "API_KEY": b64("xyz123"),
            "DB_PASS": b64("hunter2"),
        }
        assert effects[0].origin_secret_names == frozenset({"API_KEY", "DB_PASS"})

    def test_apply_is_idempotent(self, app_registry):
        """Test that two runs over a stable source yield equal effect lists."""
        app_registry.add_declaration(SecretDeclaration("API_KEY"))
        app_registry.add_declaration(SecretDeclaration("DB_PASS"))
        orchestrator = Orchestrator([app_registry])

        assert orchestrator.apply() == orchestrator.apply()

    def test_effects_ordered_by_first_identifier_occurrence(self):
        """Test that merged effects keep the position of their first member."""
        registry = SecretRegistry("default", default_provider="first")
        registry.add_connector("static", StaticConnector({"A": "1", "B": "2", "C": "3"}))
        registry.add_provider("first", KubernetesSecretProvider("first"))
        registry.add_provider("second", KubernetesSecretProvider("second"))
        registry.add_declaration(SecretDeclaration("A"))
        registry.add_declaration(SecretDeclaration("B", provider_ref="second"))
        registry.add_declaration(SecretDeclaration("C"))

        effects = Orchestrator([registry]).apply()

        assert [e.identifier for e in effects] == [
            "Secret/default/first",
            "Secret/default/second",
        ]
        assert set(effects[0].payload["data"]) == {"A", "C"}

    def test_state_is_done_after_apply(self, app_registry):
        """Test that a successful run ends in the DONE state."""
        app_registry.add_declaration(SecretDeclaration("API_KEY"))
        orchestrator = Orchestrator([app_registry])
        assert orchestrator.state is OrchestratorState.IDLE

        orchestrator.apply()

        assert orchestrator.state is OrchestratorState.DONE

    def test_effects_merged_across_registries(self, env_connector):
        """Test that registries writing to the same Secret are merged together."""
        first = SecretRegistry("first")
        first.add_connector("env", env_connector)
        first.add_provider("app", KubernetesSecretProvider("app-secrets"))
        first.add_declaration("API_KEY")

        second = SecretRegistry("second")
        second.add_connector("static", StaticConnector({"TOKEN": "t0k"}))
        second.add_provider("app", KubernetesSecretProvider("app-secrets"))
        second.add_declaration("TOKEN")

        effects = Orchestrator([first, second]).apply()

        assert len(effects) == 1
        assert effects[0].payload["data"] == {"API_KEY": b64("xyz123"), "TOKEN": b64("t0k")}


class TestConflicts:
    """Test suite for the merge pass and conflict policies."""

    @pytest.fixture
    def colliding_registry(self):
        """Two secrets mapped onto the same data key with different values."""
        registry = SecretRegistry("default")
        registry.add_connector("static", StaticConnector({"API_KEY": "new", "LEGACY_TOKEN": "old"}))
        registry.add_provider("app", KubernetesSecretProvider(
            "app-secrets", keys={"API_KEY": "token", "LEGACY_TOKEN": "token"}
        ))
        registry.add_declaration("API_KEY")
        registry.add_declaration("LEGACY_TOKEN")
        return registry

    def test_key_collision_raises_conflict_under_auto_merge(self, colliding_registry):
        """Test that auto-merge never silently drops a leaf-level collision."""
        orchestrator = Orchestrator([colliding_registry], conflict_policy=ConflictPolicy.AUTO_MERGE)

        with pytest.raises(ConflictError) as exc_info:
            orchestrator.apply()

        error = exc_info.value
        assert error.identifier == "Secret/default/app-secrets"
        assert error.secret_names == ["API_KEY", "LEGACY_TOKEN"]
        assert error.key == "data.token"
        assert "API_KEY" in str(error) and "LEGACY_TOKEN" in str(error)
        assert "new" not in str(error) and "old" not in str(error)
        assert orchestrator.state is OrchestratorState.FAILED

    def test_collision_raises_conflict_under_error_policy(self, colliding_registry):
        """Test that the error policy rejects any identifier collision."""
        orchestrator = Orchestrator([colliding_registry], conflict_policy="error")

        with pytest.raises(ConflictError) as exc_info:
            orchestrator.apply()

        assert exc_info.value.identifier == "Secret/default/app-secrets"
        assert exc_info.value.secret_names == ["API_KEY", "LEGACY_TOKEN"]

    def test_error_policy_rejects_distinct_keys(self, app_registry):
        """Test that the error policy rejects collisions even without a key clash."""
        app_registry.add_declaration("API_KEY")
        app_registry.add_declaration("DB_PASS")

        with pytest.raises(ConflictError):
            Orchestrator([app_registry], conflict_policy=ConflictPolicy.ERROR).apply()

    def test_same_key_same_value_still_conflicts(self):
        """Test that two secrets claiming one data key conflict even with equal values."""
        registry = SecretRegistry("default")
        registry.add_connector("static", StaticConnector({"A": "same", "B": "same"}))
        registry.add_provider("app", KubernetesSecretProvider("app-secrets", keys={"A": "k", "B": "k"}))
        registry.add_declaration("A")
        registry.add_declaration("B")

        with pytest.raises(ConflictError) as exc_info:
            Orchestrator([registry]).apply()

        assert exc_info.value.key == "data.k"
        assert exc_info.value.secret_names == ["A", "B"]

    def test_overwrite_policy_keeps_last_effect(self, colliding_registry):
        """Test that overwrite keeps the last-declared effect."""
        effects = Orchestrator([colliding_registry], conflict_policy="overwrite").apply()

        assert len(effects) == 1
        assert effects[0].payload["data"] == {"token": b64("old")}
        assert effects[0].origin_secret_names == frozenset({"LEGACY_TOKEN"})

    def test_non_mergeable_provider_always_conflicts(self):
        """Test that allow_merge=False turns any collision into a conflict."""
        registry = SecretRegistry("default")
        registry.add_connector("static", StaticConnector({"A": "1", "B": "2"}))
        registry.add_provider("cm", ConfigMapProvider())
        registry.add_declaration("A")
        registry.add_declaration("B")

        with pytest.raises(ConflictError) as exc_info:
            Orchestrator([registry], conflict_policy=ConflictPolicy.AUTO_MERGE).apply()

        assert exc_info.value.identifier == "ConfigMap/default/shared"
        assert exc_info.value.secret_names == ["A", "B"]

    def test_non_mergeable_provider_overwrite(self):
        """Test that overwrite still applies to non-mergeable providers."""
        registry = SecretRegistry("default")
        registry.add_connector("static", StaticConnector({"A": "1", "B": "2"}))
        registry.add_provider("cm", ConfigMapProvider())
        registry.add_declaration("A")
        registry.add_declaration("B")

        effects = Orchestrator([registry], conflict_policy=ConflictPolicy.OVERWRITE).apply()

        assert effects == [PreparedEffect(
            kind="apply-resource",
            identifier="ConfigMap/default/shared",
            payload={"data": {"B": "2"}},
            provider_ref="cm",
            origin_secret_names=frozenset({"B"}),
        )]

    def test_structural_merge_error_propagates(self):
        """Test that a structural MergeError is surfaced as is."""
        registry = SecretRegistry("default")
        registry.add_connector("static", StaticConnector({"A": "1", "B": "2"}))
        registry.add_provider("strict", StrictMergeProvider())
        registry.add_declaration("A")
        registry.add_declaration("B")

        with pytest.raises(MergeError):
            Orchestrator([registry]).apply()


class TestValidation:
    """Test suite for Orchestrator.validate()."""

    def test_every_unresolved_declaration_is_reported(self):
        """Test that N ambiguous declarations produce exactly N errors."""
        registry = SecretRegistry("default")
        registry.add_connector("a", StaticConnector())
        registry.add_connector("b", StaticConnector())
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        names = ["ONE", "TWO", "THREE"]
        for name in names:
            registry.add_declaration(name)

        with pytest.raises(ConfigurationError) as exc_info:
            Orchestrator([registry]).validate()

        errors = exc_info.value.errors
        assert len(errors) == 3
        assert all(isinstance(e, UnresolvedReferenceError) for e in errors)
        assert sorted(e.secret_name for e in errors) == sorted(names)

    def test_fetch_failures_are_aggregated(self):
        """Test that failures from every connector are reported together."""
        registry = SecretRegistry("default", default_connector="a")
        registry.add_connector("a", StaticConnector({}))
        registry.add_connector("b", StaticConnector({}))
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        registry.add_declaration("X")
        registry.add_declaration(SecretDeclaration("Y", connector_ref="b"))

        with pytest.raises(ConfigurationError) as exc_info:
            Orchestrator([registry]).validate()

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert all(isinstance(e, FetchError) for e in errors)
        assert [e.names for e in errors] == [["X"], ["Y"]]
        assert "Connector 'a'" in str(exc_info.value)

    def test_apply_returns_nothing_when_validation_fails(self):
        """Test that apply() raises before producing any effect."""
        provider = ConfigMapProvider()
        registry = SecretRegistry("default")
        registry.add_connector("static", StaticConnector({"A": "1"}))
        registry.add_provider("cm", provider)
        registry.add_declaration("A")
        registry.add_declaration("MISSING")
        orchestrator = Orchestrator([registry])

        with pytest.raises(ConfigurationError):
            orchestrator.apply()

        assert provider.prepare_calls == 0
        assert orchestrator.state is OrchestratorState.FAILED

    def test_validate_never_prepares(self):
        """Test that validate() fetches but does not call prepare()."""
        provider = ConfigMapProvider()
        connector = RecordingConnector({"A": "1"})
        registry = SecretRegistry("default")
        registry.add_connector("static", connector)
        registry.add_provider("cm", provider)
        registry.add_declaration("A")

        resolution = Orchestrator([registry]).validate()

        assert [d.name for d in resolution["default"]] == ["A"]
        assert connector.load_calls == [{"A"}]
        assert provider.prepare_calls == 0

    def test_unresolved_registry_is_not_loaded(self):
        """Test that a registry failing resolution issues no load() calls."""
        broken_connector = RecordingConnector({"A": "1"})
        broken = SecretRegistry("broken")
        broken.add_connector("static", broken_connector)
        broken.add_declaration("A")  # no provider registered

        healthy_connector = RecordingConnector({"B": "2"})
        healthy = SecretRegistry("healthy")
        healthy.add_connector("static", healthy_connector)
        healthy.add_provider("app", KubernetesSecretProvider("app-secrets"))
        healthy.add_declaration("B")

        with pytest.raises(ConfigurationError) as exc_info:
            Orchestrator([broken, healthy]).validate()

        assert len(exc_info.value.errors) == 1
        assert broken_connector.load_calls == []
        assert healthy_connector.load_calls == [{"B"}]

    def test_unexpected_connector_exception_is_recorded(self):
        """Test that a non-FetchError from a connector becomes a FetchError."""
        registry = SecretRegistry("default")
        registry.add_connector("broken", BrokenConnector())
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        registry.add_declaration("A")

        with pytest.raises(ConfigurationError) as exc_info:
            Orchestrator([registry]).validate()

        error = exc_info.value.errors[0]
        assert isinstance(error, FetchError)
        assert error.names == ["A"]
        assert "connection reset" in str(error)

    def test_duplicate_registry_names_rejected(self):
        """Test that registry names must be unique within an orchestrator."""
        with pytest.raises(ConfigurationError):
            Orchestrator([SecretRegistry("dup"), SecretRegistry("dup")])


class TestLoading:
    """Test suite for per-connector bulk loading."""

    def test_one_load_per_connector_with_full_name_set(self):
        """Test that each connector is loaded exactly once per run."""
        shared = RecordingConnector({"A": "1", "B": "2"})
        other = RecordingConnector({"C": "3"})
        registry = SecretRegistry("default", default_connector="shared")
        registry.add_connector("shared", shared)
        registry.add_connector("other", other)
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        registry.add_declaration("A")
        registry.add_declaration("B")
        registry.add_declaration(SecretDeclaration("C", connector_ref="other"))

        Orchestrator([registry]).apply()

        assert shared.load_calls == [{"A", "B"}]
        assert other.load_calls == [{"C"}]

    def test_connectors_load_concurrently(self):
        """Test that loads for different connectors run at the same time."""
        barrier = threading.Barrier(2)
        registry = SecretRegistry("default", default_connector="a")
        registry.add_connector("a", BarrierConnector({"A": "1"}, barrier))
        registry.add_connector("b", BarrierConnector({"B": "2"}, barrier))
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        registry.add_declaration("A")
        registry.add_declaration(SecretDeclaration("B", connector_ref="b"))

        effects = Orchestrator([registry]).apply()

        assert set(effects[0].payload["data"]) == {"A", "B"}

    def test_timeout_is_a_fetch_error_for_that_connector_only(self):
        """Test that a slow connector times out without failing its sibling."""
        release = threading.Event()
        fast = RecordingConnector({"FAST": "1"})
        registry = SecretRegistry("default", default_connector="fast")
        registry.add_connector("fast", fast)
        registry.add_connector("slow", BlockingConnector({"SLOW": "2"}, release))
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        registry.add_declaration("FAST")
        registry.add_declaration(SecretDeclaration("SLOW", connector_ref="slow"))

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                Orchestrator([registry], load_timeout=0.2).validate()
            stuck = [t for t in threading.enumerate() if t.name == "secretstack-load-default-slow"]
        finally:
            release.set()

        errors = exc_info.value.errors
        assert len(errors) == 1
        assert errors[0].names == ["SLOW"]
        assert "timed out" in str(errors[0])
        assert fast.load_calls == [{"FAST"}]
        # The abandoned load must not keep the interpreter alive
        assert len(stuck) == 1 and stuck[0].daemon

    def test_timed_out_load_does_not_block_exit(self, tmp_path):
        """Test that a process with a stuck connector exits after reporting the timeout."""
        script = tmp_path / "stuck.py"
        script.write_text(textwrap.dedent("""
            import time
            from secretstack.secrets.domains.env_connector import StaticConnector
            from secretstack.secrets.domains.errors import ConfigurationError
            from secretstack.secrets.domains.kubernetes_provider import KubernetesSecretProvider
            from secretstack.secrets.domains.registry import SecretRegistry
            from secretstack.secrets.workflows.orchestrator import Orchestrator

            class StuckConnector(StaticConnector):
                def _fetch(self, names):
                    time.sleep(60)
                    return {}

            registry = SecretRegistry("default")
            registry.add_connector("stuck", StuckConnector())
            registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
            registry.add_declaration("A")
            try:
                Orchestrator([registry], load_timeout=0.2).validate()
            except ConfigurationError:
                print("timed out")
        """))
        env = dict(os.environ, PYTHONPATH=str(Path(__file__).resolve().parents[1]))

        result = subprocess.run(
            [sys.executable, str(script)], capture_output=True, text=True, timeout=20, env=env
        )

        assert result.returncode == 0
        assert result.stdout.strip() == "timed out"

    def test_shared_connector_loaded_once(self):
        """Test that one instance registered under two aliases gets one load() call."""
        shared = RecordingConnector({"A": "1", "B": "2"})
        registry = SecretRegistry("default", default_connector="x")
        registry.add_connector("x", shared)
        registry.add_connector("y", shared)
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        registry.add_declaration("A")
        registry.add_declaration(SecretDeclaration("B", connector_ref="y"))

        effects = Orchestrator([registry]).apply()

        assert shared.load_calls == [{"A", "B"}]
        assert set(effects[0].payload["data"]) == {"A", "B"}

    def test_shared_connector_across_registries(self):
        """Test that registries sharing a connector instance share its load() call."""
        shared = RecordingConnector({"A": "1", "B": "2"})
        first = SecretRegistry("first")
        first.add_connector("static", shared)
        first.add_provider("app", KubernetesSecretProvider("first"))
        first.add_declaration("A")
        second = SecretRegistry("second")
        second.add_connector("static", shared)
        second.add_provider("app", KubernetesSecretProvider("second"))
        second.add_declaration("B")

        Orchestrator([first, second]).validate()

        assert shared.load_calls == [{"A", "B"}]
