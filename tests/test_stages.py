"""
Test suite for the stage catalog
"""

import pytest

from filing_workflow.exceptions import NotFoundError, ValidationError
from filing_workflow.stages import (
    LTD_STAGES, VAT_STAGES, StageCatalog, WorkflowType, ordinal_of, parse_workflow_type, stages_for,
)


@pytest.fixture
def stage_catalog():
    return StageCatalog()


class TestWorkflowTypeParsing:

    def test_accepts_any_case(self):
        assert parse_workflow_type("ltd") == WorkflowType.LTD
        assert parse_workflow_type(" Vat ") == WorkflowType.VAT
        assert parse_workflow_type(WorkflowType.LTD) == WorkflowType.LTD

    @pytest.mark.parametrize("value", ["", "PAYE", None, 3])
    def test_rejects_unknown_types(self, value):
        with pytest.raises(ValidationError):
            parse_workflow_type(value)


class TestCatalogContents:

    def test_ltd_order(self):
        keys = [s.key for s in stages_for("LTD")]
        assert len(keys) == 15
        assert keys[0] == "WAITING_FOR_YEAR_END"
        assert keys[-2:] == ["FILED_TO_COMPANIES_HOUSE", "FILED_TO_HMRC"]

    def test_vat_order(self):
        keys = [s.key for s in stages_for("VAT")]
        assert len(keys) == 11
        assert keys[0] == "CLIENT_BOOKKEEPING"
        assert keys[-1] == "FILED_TO_HMRC"

    def test_ordinals_are_contiguous(self):
        for stages in (LTD_STAGES, VAT_STAGES):
            assert [s.ordinal for s in stages] == list(range(len(stages)))

    def test_reviewed_stages_are_system_only(self, stage_catalog):
        for wf_type in ("LTD", "VAT"):
            assert not stage_catalog.get_stage("REVIEWED_BY_MANAGER", wf_type).user_selectable
            assert not stage_catalog.get_stage("REVIEWED_BY_PARTNER", wf_type).user_selectable

    def test_selectable_stages_hide_system_stages(self, stage_catalog):
        keys = [s.key for s in stage_catalog.selectable_stages("VAT")]
        assert len(keys) == 9
        assert "REVIEWED_BY_MANAGER" not in keys


class TestLookups:

    def test_ordinal_of(self):
        assert ordinal_of("WAITING_FOR_YEAR_END", "LTD") == 0
        assert ordinal_of("FILED_TO_HMRC", "LTD") == 14
        assert ordinal_of("WORK_IN_PROGRESS", "VAT") == 1

    def test_same_key_has_type_specific_ordinal(self):
        assert ordinal_of("WORK_IN_PROGRESS", "LTD") != ordinal_of("WORK_IN_PROGRESS", "VAT")

    def test_unknown_stage_raises(self):
        with pytest.raises(NotFoundError):
            ordinal_of("PAPERWORK_CHASED", "VAT")
        # NotFoundError is a ValidationError
        with pytest.raises(ValidationError):
            ordinal_of("NOT_A_STAGE", "LTD")

    def test_boundaries(self, stage_catalog):
        assert stage_catalog.initial_stage("LTD").key == "WAITING_FOR_YEAR_END"
        assert stage_catalog.terminal_stage("LTD").key == "FILED_TO_HMRC"
        assert stage_catalog.penultimate_stage("LTD").key == "FILED_TO_COMPANIES_HOUSE"
        assert stage_catalog.penultimate_stage("VAT").key == "CLIENT_APPROVED"

    def test_registry_filing_stage(self, stage_catalog):
        assert stage_catalog.registry_filing_stage("LTD").key == "FILED_TO_COMPANIES_HOUSE"
        assert stage_catalog.registry_filing_stage("VAT") is None

    @pytest.mark.parametrize("wf_type,stage,signoff", [
        ("LTD", "DISCUSS_WITH_MANAGER", "REVIEWED_BY_MANAGER"),
        ("LTD", "REVIEW_BY_PARTNER", "REVIEWED_BY_PARTNER"),
        ("VAT", "REVIEW_PENDING_MANAGER", "REVIEWED_BY_MANAGER"),
        ("VAT", "REVIEW_PENDING_PARTNER", "REVIEWED_BY_PARTNER"),
    ])
    def test_review_signoff_stage(self, stage_catalog, wf_type, stage, signoff):
        assert stage_catalog.review_signoff_stage(stage, wf_type).key == signoff

    def test_no_signoff_outside_review(self, stage_catalog):
        assert stage_catalog.review_signoff_stage("WORK_IN_PROGRESS", "LTD") is None
        assert stage_catalog.review_signoff_stage("FILED_TO_HMRC", "VAT") is None

    def test_next_and_previous(self, stage_catalog):
        assert stage_catalog.next_stage("WORK_IN_PROGRESS", "LTD").key == "DISCUSS_WITH_MANAGER"
        assert stage_catalog.next_stage("FILED_TO_HMRC", "LTD") is None
        assert stage_catalog.previous_stage("WAITING_FOR_YEAR_END", "LTD") is None
        assert stage_catalog.previous_stage("QUERIES_PENDING", "VAT").key == "WORK_IN_PROGRESS"

    def test_stages_between(self, stage_catalog):
        between = stage_catalog.stages_between("WORK_IN_PROGRESS", "REVIEW_BY_PARTNER", "LTD")
        assert [s.key for s in between] == ["DISCUSS_WITH_MANAGER"]

        everything = stage_catalog.stages_between(
            "WORK_IN_PROGRESS", "REVIEW_BY_PARTNER", "LTD", selectable_only=False
        )
        assert [s.key for s in everything] == ["DISCUSS_WITH_MANAGER", "REVIEWED_BY_MANAGER"]

    def test_progress(self, stage_catalog):
        progress = stage_catalog.progress("FILED_TO_HMRC", "VAT")
        assert progress["current_index"] == 10
        assert progress["total_stages"] == 11
        assert progress["progress_percentage"] == 100.0
