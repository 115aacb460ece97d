"""
BrandForge Stage Engine
Tests: stage run orchestrator.

Covers:
    1. Project bootstrap and tenant scoping
    2. Run protocol: idempotency, soft gating, prechecks, job snapshot
    3. Job execution: versions, stage status, usage, parse failures
    4. Approval + cascading invalidation
    5. Manual versions
    6. Sticky stage config
    7. Business-plan generation (advisory lock, rate limit)
"""

import pytest

from brandforge.ai.providers import AIProvider, _usage
from brandforge.core.exceptions import (
    BudgetExceededError,
    ConflictError,
    NotFoundError,
    ProviderNotConfiguredError,
    RateLimitError,
    StageLockedError,
    ValidationError,
)
from brandforge.models import db
from brandforge.models.job import Job
from brandforge.models.organization import TokenUsage
from brandforge.models.project import Stage
from brandforge.services import job_queue, stage_service


class _InvalidOutputProvider(AIProvider):
    """Stands in for MOCK and answers with text that is not JSON."""

    type = "MOCK"

    def check_status(self):
        return {"provider": self.type, "ready": True, "error": None}

    def complete(self, messages, model="mock", **kwargs):
        return {"content": "Sure! Here are some names: Lumora, Vantix",
                "model": "mock-v1", "usage": _usage(40, 12), "finish_reason": "stop"}


def _stage(project, key):
    return Stage.query.filter_by(project_id=project.id, stage_key=key).one()


def _run_and_process(org, project, stage_key, **kw):
    result = stage_service.run_stage(org.id, project.id, stage_key, user_id="user-1", **kw)
    job = job_queue.process_immediately(result["jobId"], "test-worker")
    return result, job


# ═══════════════════════════════════════════════════════════════════════════
#  Projects & tenancy
# ═══════════════════════════════════════════════════════════════════════════

class TestProjects:
    """Project bootstrap."""

    def test_stages_bootstrapped_from_modules(self, project):
        keys = [s.stage_key for s in sorted(project.stages, key=lambda s: s.order)]
        assert keys[:4] == ["venture_intake", "venture_idea_validation",
                            "venture_buyer_persona", "venture_business_plan"]
        assert "naming" in keys
        assert all(s.status == "NOT_STARTED" for s in project.stages)

    def test_name_required(self, org):
        with pytest.raises(ValidationError):
            stage_service.create_project(org.id, "  ", ["brand"])

    def test_unknown_module(self, org):
        with pytest.raises(ValidationError) as exc:
            stage_service.create_project(org.id, "X", ["marketing"])
        assert "marketing" in str(exc.value)

    def test_unknown_org(self):
        with pytest.raises(NotFoundError):
            stage_service.create_project(999, "X", ["brand"])


class TestTenantIsolation:
    """Other orgs' projects do not exist for the caller."""

    def test_get_project_cross_org(self, project, make_org):
        other = make_org(slug="rival")
        with pytest.raises(NotFoundError):
            stage_service.get_project(other.id, project.id)

    def test_run_stage_cross_org(self, project, make_org):
        other = make_org(slug="rival")
        with pytest.raises(NotFoundError):
            stage_service.run_stage(other.id, project.id, "naming")
        assert Job.query.count() == 0

    def test_unknown_stage(self, org, project):
        with pytest.raises(NotFoundError):
            stage_service.run_stage(org.id, project.id, "not_a_stage")


# ═══════════════════════════════════════════════════════════════════════════
#  Run protocol
# ═══════════════════════════════════════════════════════════════════════════

class TestRunStage:
    """Request handling up to the job hand-off."""

    def test_queues_job_with_snapshot(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "naming", user_id="user-1")

        assert result["success"] is True
        assert result["status"] == "QUEUED"
        assert result["idempotent"] is False
        assert result["provider"] == "MOCK"
        assert result["model"] == "mock"
        assert result["preset"] == "balanced"

        job = db.session.get(Job, result["jobId"])
        assert job.type == "GENERATE_OUTPUT"
        assert job.stage_key == "naming"
        assert job.created_by == "user-1"
        assert job.run_config["estimatedTokens"] == 1150
        assert job.run_config["presetConfig"]["numVariants"] == 5

    def test_active_job_is_returned(self, org, project):
        first = stage_service.run_stage(org.id, project.id, "naming")
        second = stage_service.run_stage(org.id, project.id, "naming", regenerate=True,
                                         preset="quality")
        assert second["jobId"] == first["jobId"]
        assert second["idempotent"] is True
        assert second["preset"] == "balanced"
        assert Job.query.count() == 1

    def test_new_job_after_previous_finished(self, org, project):
        first, _ = _run_and_process(org, project, "naming")
        second = stage_service.run_stage(org.id, project.id, "naming")
        assert second["jobId"] != first["jobId"]
        assert second["idempotent"] is False
        assert db.session.get(Job, second["jobId"]).type == "REGENERATE_OUTPUT"

    def test_display_key_lookup(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "A2")
        assert result["stageKey"] == "naming"

    def test_adhoc_stage_created_on_first_run(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "tagline")
        stage = _stage(project, "tagline")
        assert result["stageId"] == stage.id
        assert stage.display_key is None

    def test_missing_dependencies_are_advisory(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "venture_idea_validation")
        assert result["status"] == "QUEUED"
        assert result["missingDependencies"] == ["venture_intake"]

    def test_override_dependencies(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "venture_idea_validation",
                                         override_dependencies=True)
        assert result["missingDependencies"] == []

    def test_budget_exceeded_creates_no_job(self, make_org, make_project):
        poor = make_org(slug="poor", limit=100)
        project = make_project(poor.id)
        with pytest.raises(BudgetExceededError) as exc:
            stage_service.run_stage(poor.id, project.id, "naming")
        assert exc.value.code == "TOKEN_LIMIT_REACHED"
        assert exc.value.to_payload()["estimatedTokens"] == 1150
        assert Job.query.count() == 0

    def test_fast_preset_fits_smaller_budget(self, make_org, make_project):
        org = make_org(slug="lean", limit=600)
        project = make_project(org.id)
        result = stage_service.run_stage(org.id, project.id, "naming", preset="fast")
        assert result["status"] == "QUEUED"

    def test_provider_not_configured(self, org, project):
        with pytest.raises(ProviderNotConfiguredError) as exc:
            stage_service.run_stage(org.id, project.id, "naming", provider="openai")
        assert exc.value.provider == "OPENAI"
        assert Job.query.count() == 0

    def test_model_fallback_warning(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "naming", model="gpt-4o")
        assert result["model"] == "mock"
        assert "gpt-4o" in result["fallbackWarning"]

    def test_inline_mode_runs_synchronously(self, app, org, project):
        app.config["JOB_EXECUTION_MODE"] = "inline"
        try:
            result = stage_service.run_stage(org.id, project.id, "naming")
        finally:
            app.config["JOB_EXECUTION_MODE"] = "queue"
        assert result["status"] == "DONE"
        assert result["success"] is True
        assert _stage(project, "naming").status == "GENERATED"


# ═══════════════════════════════════════════════════════════════════════════
#  Execution
# ═══════════════════════════════════════════════════════════════════════════

class TestExecuteStageJob:
    """prompt → provider → parse → usage → version."""

    def test_first_run_creates_version_one(self, org, project):
        _, job = _run_and_process(org, project, "naming")

        assert job.status == "DONE"
        assert job.result["versionNumber"] == 1
        assert job.result["stageStatus"] == "GENERATED"

        output = stage_service.get_output(org.id, project.id, "naming")
        current = output["currentVersion"]
        assert current["version"] == 1
        assert current["type"] == "GENERATED"
        assert current["provider"] == "MOCK"
        assert current["model"] == "mock-v1"
        assert len(current["content"]["items"]) == 5
        assert current["runInfo"]["requestedModel"] == "mock"
        assert current["runInfo"]["validated"] is True
        assert current["prompt_set_version"] == "brand.naming@v1"

    def test_regenerate_appends_version(self, org, project):
        _run_and_process(org, project, "naming")
        first = stage_service.get_output(org.id, project.id, "naming")["currentVersion"]

        _run_and_process(org, project, "naming", regenerate=True)
        output = stage_service.get_output(org.id, project.id, "naming")

        assert output["latestVersion"] == 2
        assert _stage(project, "naming").status == "REGENERATED"
        assert [v["version"] for v in output["versions"]] == [2, 1]
        pinned = stage_service.get_output(org.id, project.id, "naming", version=1)
        assert pinned["currentVersion"]["content"] == first["content"]
        assert pinned["currentVersion"]["id"] == first["id"]

    def test_usage_recorded(self, org, project):
        _, job = _run_and_process(org, project, "naming")
        rows = TokenUsage.query_for_org(org.id).all()
        assert len(rows) == 1
        assert rows[0].stage_key == "naming"
        assert rows[0].job_id == job.id
        assert rows[0].total_tokens == job.result["totalTokens"]
        db.session.expire_all()
        assert stage_service.ledger.usage_summary(org.id)["used"] == rows[0].total_tokens

    def test_parse_failure_saves_nothing_and_retries(self, app, org, project):
        app.extensions["ai_providers"].register(_InvalidOutputProvider())

        _, job = _run_and_process(org, project, "naming")

        assert job.status == "QUEUED"
        assert job.attempts == 1
        assert job.error.startswith("Output validation failed")
        assert stage_service.get_output(org.id, project.id, "naming")["latestVersion"] is None
        assert TokenUsage.query.count() == 0
        assert _stage(project, "naming").status == "NOT_STARTED"

    def test_parse_failure_exhausts_attempts(self, app, org, project):
        app.extensions["ai_providers"].register(_InvalidOutputProvider())
        result = stage_service.run_stage(org.id, project.id, "naming")
        for _ in range(3):
            job = job_queue.process_immediately(result["jobId"], "test-worker")
        assert job.status == "FAILED"
        # A failed job no longer blocks new runs
        again = stage_service.run_stage(org.id, project.id, "naming")
        assert again["jobId"] != result["jobId"]

    def test_lost_ownership_discards_handler_writes(self, org, project):
        """A worker whose lock was taken over must not publish a version."""
        result = stage_service.run_stage(org.id, project.id, "naming")
        assert job_queue.claim(result["jobId"], "worker-a") is True
        Job.query.filter_by(id=result["jobId"]).update({"locked_by": "worker-b"})
        db.session.commit()

        job = db.session.get(Job, result["jobId"], populate_existing=True)
        job = job_queue.process_job(job, "worker-a")

        assert job.status == "PROCESSING"
        assert job.locked_by == "worker-b"
        assert job.result is None
        assert stage_service.get_output(org.id, project.id, "naming")["latestVersion"] is None
        assert TokenUsage.query.count() == 0
        assert _stage(project, "naming").status == "NOT_STARTED"

    def test_admin_failed_job_stays_failed(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "naming")
        job_queue.claim(result["jobId"], "worker-a")
        job_queue.fail_job(org.id, result["jobId"])

        job = db.session.get(Job, result["jobId"], populate_existing=True)
        job = job_queue.process_job(job, "worker-a")

        assert job.status == "FAILED"
        assert TokenUsage.query.count() == 0
        assert stage_service.get_output(org.id, project.id, "naming")["latestVersion"] is None


# ═══════════════════════════════════════════════════════════════════════════
#  Outputs, approval & cascade
# ═══════════════════════════════════════════════════════════════════════════

class TestGetOutput:
    """Version history reads."""

    def test_no_output_yet(self, org, project):
        output = stage_service.get_output(org.id, project.id, "naming")
        assert output["output"] is None
        assert output["versions"] == []
        assert output["currentVersion"] is None

    def test_pinned_version_missing(self, org, project):
        _run_and_process(org, project, "naming")
        with pytest.raises(NotFoundError):
            stage_service.get_output(org.id, project.id, "naming", version=7)


class TestApproval:
    """Approval marks the stage and invalidates dependents."""

    DOWNSTREAM = ("venture_idea_validation", "venture_buyer_persona", "venture_business_plan")

    def _complete_venture_chain(self, org, project):
        """Drafted intake plus an approved version on every downstream stage."""
        stage_service.save_manual_version(org.id, project.id, "venture_intake",
                                          {"idea": "Brand OS"}, user_id="user-1")
        for key in self.DOWNSTREAM:
            stage_service.save_manual_version(org.id, project.id, key,
                                              {"notes": f"{key} draft"}, user_id="user-1")
            stage_service.approve_version(org.id, project.id, key, user_id="user-1")
        assert [_stage(project, key).status for key in self.DOWNSTREAM] == ["APPROVED"] * 3

    def test_approve_latest(self, org, project):
        _run_and_process(org, project, "naming")
        result = stage_service.approve_version(org.id, project.id, "naming", user_id="user-1")
        assert result["stage"]["status"] == "APPROVED"
        assert result["version"]["status"] == "APPROVED"
        output = stage_service.get_output(org.id, project.id, "naming")
        assert output["approvedVersion"]["id"] == result["version"]["id"]

    def test_cascade_resets_transitive_dependents(self, org, project):
        self._complete_venture_chain(org, project)

        result = stage_service.approve_version(org.id, project.id, "venture_intake")

        assert result["invalidatedStages"] == [
            "venture_idea_validation", "venture_buyer_persona", "venture_business_plan",
        ]
        for key in result["invalidatedStages"]:
            assert _stage(project, key).status == "NOT_STARTED"
        assert _stage(project, "venture_intake").status == "APPROVED"
        # Invalidation never deletes the approved history
        for key in self.DOWNSTREAM:
            assert stage_service.get_output(org.id, project.id, key)["latestVersion"] == 1

    def test_reapproving_same_version_does_not_cascade(self, org, project):
        self._complete_venture_chain(org, project)
        first = stage_service.approve_version(org.id, project.id, "venture_intake")
        stage_service.save_manual_version(org.id, project.id, "venture_idea_validation",
                                          {"notes": "rework"}, user_id="user-1")

        again = stage_service.approve_version(org.id, project.id, "venture_intake",
                                              version_id=first["version"]["id"])
        assert again["invalidatedStages"] == []
        assert _stage(project, "venture_idea_validation").status == "GENERATED"

    def test_unrelated_stages_untouched(self, org, project):
        _run_and_process(org, project, "naming")
        self._complete_venture_chain(org, project)
        stage_service.approve_version(org.id, project.id, "venture_intake")
        assert _stage(project, "naming").status == "GENERATED"

    def test_approve_without_output(self, org, project):
        with pytest.raises(ConflictError):
            stage_service.approve_version(org.id, project.id, "naming")

    def test_approve_foreign_version(self, org, project):
        _run_and_process(org, project, "naming")
        with pytest.raises(NotFoundError):
            stage_service.approve_version(org.id, project.id, "naming", version_id=9999)


class TestManualVersions:
    """Human edits become MANUAL versions."""

    def test_manual_after_generated(self, org, project):
        _run_and_process(org, project, "naming")
        base = stage_service.get_output(org.id, project.id, "naming")["currentVersion"]

        version = stage_service.save_manual_version(
            org.id, project.id, "naming", {"items": [{"name": "Lumora"}]},
            base_version_id=base["id"], user_id="editor",
        )

        assert version["version"] == 2
        assert version["type"] == "MANUAL"
        assert version["provider"] == "MANUAL"
        assert version["runInfo"]["editedFromVersion"] == 1
        assert version["created_by"] == "editor"
        assert _stage(project, "naming").status == "GENERATED"
        assert TokenUsage.query.count() == 1

    def test_string_content_wrapped(self, org, project):
        version = stage_service.save_manual_version(org.id, project.id, "naming", "Lumora")
        assert version["content"] == {"raw": "Lumora"}
        assert version["version"] == 1
        assert _stage(project, "naming").status == "GENERATED"

    @pytest.mark.parametrize("content", [None, "", {}, ["a"]])
    def test_invalid_content(self, org, project, content):
        with pytest.raises(ValidationError):
            stage_service.save_manual_version(org.id, project.id, "naming", content)

    def test_refused_while_job_active(self, org, project):
        stage_service.run_stage(org.id, project.id, "naming")
        with pytest.raises(ConflictError):
            stage_service.save_manual_version(org.id, project.id, "naming", {"x": 1})

    def test_seed_text_from_manual_edit(self, org, project):
        result = stage_service.run_stage(org.id, project.id, "naming", seed_text="Lumora")
        assert db.session.get(Job, result["jobId"]).run_config["seedText"] == "Lumora"


# ═══════════════════════════════════════════════════════════════════════════
#  Sticky config
# ═══════════════════════════════════════════════════════════════════════════

class TestStageConfig:
    """Per-stage {provider, model, preset}."""

    def test_defaults(self, org, project):
        config = stage_service.get_stage_config(org.id, project.id, "naming")
        assert config["provider"] is None
        assert config["effective"]["provider"] == "MOCK"
        assert config["effective"]["preset"] == "balanced"

    def test_put_and_resolve(self, org, project):
        config = stage_service.put_stage_config(org.id, project.id, "naming", {
            "provider": "anthropic", "model": "claude-3-5-haiku-latest", "preset": "fast",
        })
        assert config["provider"] == "ANTHROPIC"
        assert config["effective"]["model"] == "claude-3-5-haiku-latest"
        assert config["effective"]["maxOutputTokens"] == 800

    def test_sticky_model_dropped_for_other_provider(self, org, project):
        stage_service.put_stage_config(org.id, project.id, "naming", {
            "provider": "anthropic", "model": "claude-3-5-haiku-latest",
        })
        stage = _stage(project, "naming")
        effective = stage_service.resolve_stage_config(stage, provider="openai")
        assert effective.provider == "OPENAI"
        assert effective.model == "gpt-4o"
        assert effective.fallback_warning is None

    def test_call_overrides_sticky(self, org, project):
        stage_service.put_stage_config(org.id, project.id, "naming", {"preset": "quality"})
        stage = _stage(project, "naming")
        assert stage_service.resolve_stage_config(stage).preset == "quality"
        assert stage_service.resolve_stage_config(stage, preset="fast").preset == "fast"

    def test_null_clears(self, org, project):
        stage_service.put_stage_config(org.id, project.id, "naming", {"preset": "fast"})
        config = stage_service.put_stage_config(org.id, project.id, "naming", {"preset": None})
        assert config["preset"] is None
        assert _stage(project, "naming").config == {}

    @pytest.mark.parametrize("data", [
        {"preset": "turbo"},
        {"provider": "gemini"},
        {"model": 42},
    ])
    def test_invalid(self, org, project, data):
        with pytest.raises(ValidationError):
            stage_service.put_stage_config(org.id, project.id, "naming", data)


# ═══════════════════════════════════════════════════════════════════════════
#  Business plan
# ═══════════════════════════════════════════════════════════════════════════

class TestBusinessPlan:
    """Serialized, rate-limited generation."""

    def test_queues_job(self, org, project):
        result = stage_service.generate_business_plan(org.id, project.id, user_id="user-1")
        assert result["status"] == "QUEUED"
        job = db.session.get(Job, result["jobId"])
        assert job.type == "BUSINESS_PLAN_GENERATE"
        assert job.payload["requestedBy"] == "user-1"

    def test_refused_while_active(self, org, project):
        stage_service.generate_business_plan(org.id, project.id)
        with pytest.raises(StageLockedError):
            stage_service.generate_business_plan(org.id, project.id)

    def test_lock_released_after_refusal(self, org, project):
        stage_service.generate_business_plan(org.id, project.id)
        with pytest.raises(StageLockedError):
            stage_service.generate_business_plan(org.id, project.id)
        job = Job.query.one()
        job_queue.process_immediately(job.id, "test-worker")
        assert stage_service.generate_business_plan(org.id, project.id)["status"] == "QUEUED"

    def test_generated_plan_version(self, org, project):
        result = stage_service.generate_business_plan(org.id, project.id)
        job = job_queue.process_immediately(result["jobId"], "test-worker")
        assert job.status == "DONE"
        output = stage_service.get_output(org.id, project.id, "V4")
        assert "executive_summary" in output["currentVersion"]["content"]

    def test_rate_limited(self, app, org, project):
        limit = app.config["BUSINESS_PLAN_GENERATE_LIMIT"]
        for _ in range(limit):
            result = stage_service.generate_business_plan(org.id, project.id)
            job_queue.process_immediately(result["jobId"], "test-worker")

        with pytest.raises(RateLimitError) as exc:
            stage_service.generate_business_plan(org.id, project.id)
        assert exc.value.limit == limit
        assert Job.query.count() == limit
