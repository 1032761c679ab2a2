import pytest

from conftest import EXT_FIELD, SOURCE_ORG, TARGET_ORG, make_template, rid, simple_step
from orgmigrate.exceptions import AuthError, ConfigurationError, ConnectivityError, FatalLoadError
from orgmigrate.models.record import FieldDescribe
from orgmigrate.models.template import (
    DataIntegrityCheck,
    DependencyCheck,
    PicklistCheck,
    Severity,
    ValidationSpec,
)
from orgmigrate.services.external_id import MANAGED_FIELD
from orgmigrate.services.validator import ValidationEngine, render_message
from orgmigrate.templates import LEAVE_RULES_TEMPLATE
from orgmigrate.templates.leave_rules import LEAVE_RULE_OBJECT
from orgmigrate.templates.pay_codes import PAY_CODE_OBJECT

THING = "Thing__c"
PARENT = "Parent__c"
CHILD = "Child__c"


def _schema(client, object_type, extra=None, source_ext=EXT_FIELD, target_ext=EXT_FIELD):
    base = {"Id": "id", "Name": "string", "Parent__c": "reference"}
    base.update(extra or {})
    client.add_describe(SOURCE_ORG, object_type, dict(base, **{source_ext: "string"}))
    client.add_describe(TARGET_ORG, object_type, dict(base, **{target_ext: "string"}))


def _add(client, object_type, prefix, n, **fields):
    record_id = rid(prefix, n)
    client.add_record(SOURCE_ORG, object_type, dict({"Id": record_id, "Name": f"{object_type} {n}"}, **fields))
    return record_id


@pytest.fixture
def validator(client, settings):
    return ValidationEngine(client, settings)


def test_clean_selection_is_valid(client, validator):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", 1), _add(client, THING, "a01", 2)]

    result = validator.validate(make_template(simple_step("things", THING)), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert result.is_valid
    assert not result.short_circuited
    assert result.checks_run[:4] == ["selection_size", "connectivity", "record_existence", "external_ids"]


def test_empty_selection_warns(client, validator):
    _schema(client, THING)

    result = validator.validate(make_template(simple_step("things", THING)), SOURCE_ORG, TARGET_ORG, {})

    assert result.is_valid
    assert result.warnings[0].check_name == "selection_size"
    assert "No records selected" in result.warnings[0].message


def test_large_selection_warns(client, validator, settings):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", n) for n in range(1, settings.large_selection_threshold + 2)]

    result = validator.validate(make_template(simple_step("things", THING)), SOURCE_ORG, TARGET_ORG, {THING: ids})

    issues = result.issues_for("selection_size")
    assert len(issues) == 1
    assert issues[0].severity == Severity.WARNING
    assert issues[0].suggested_fix


def test_unreachable_org_short_circuits(client, validator):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", 1)]
    client.probe_errors[TARGET_ORG] = AuthError("Reconnect", org_id=TARGET_ORG, requires_reconnect=True)
    client.probe_errors[SOURCE_ORG] = ConnectivityError("Down", error_code="NETWORK_ERROR")

    result = validator.validate(make_template(simple_step("things", THING)), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert not result.is_valid
    assert result.short_circuited
    errors = result.issues_for("connectivity")
    assert len(errors) == 2
    assert errors[1].suggested_fix == "Reconnect the org"
    assert client.queries == []


def test_missing_and_malformed_records_are_errors(client, validator):
    _schema(client, THING)
    present = _add(client, THING, "a01", 1)
    absent = rid("a01", 50)

    result = validator.validate(
        make_template(simple_step("things", THING)),
        SOURCE_ORG,
        TARGET_ORG,
        {THING: [present, absent, "not-an-id"]},
    )

    assert result.short_circuited
    flagged = {i.record_id for i in result.issues_for("record_existence")}
    assert flagged == {absent, "not-an-id"}
    assert "external_ids" not in result.checks_run


def test_selection_for_unknown_object_is_error(client, validator):
    _schema(client, THING)

    result = validator.validate(
        make_template(simple_step("things", THING)), SOURCE_ORG, TARGET_ORG, {"Other__c": [rid("a05", 1)]}
    )

    assert not result.is_valid
    assert "does not migrate" in result.errors[0].message


def test_missing_external_id_field_short_circuits(client, validator):
    client.add_describe(SOURCE_ORG, THING, {"Id": "id", "Name": "string"})
    client.add_describe(TARGET_ORG, THING, {"Id": "id", "Name": "string", EXT_FIELD: "string"})
    ids = [_add(client, THING, "a01", 1)]

    result = validator.validate(make_template(simple_step("things", THING)), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert result.short_circuited
    assert result.issues_for("external_ids")[0].severity == Severity.ERROR


def test_cross_environment_is_info_and_fallback_warns(client, validator):
    _schema(client, THING, source_ext=MANAGED_FIELD, target_ext=EXT_FIELD)
    ids = [_add(client, THING, "a01", 1)]

    result = validator.validate(make_template(simple_step("things", THING)), SOURCE_ORG, TARGET_ORG, {THING: ids})

    severities = sorted(i.severity.value for i in result.issues_for("external_ids"))
    assert severities == ["info", "warning"]
    assert result.is_valid


def test_integrity_check_flags_each_row(client, validator):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", 1), _add(client, THING, "a01", 2)]
    check = DataIntegrityCheck(
        name="things_without_owner",
        query="SELECT Id, Name FROM Thing__c WHERE Id IN ({selectedRecordIds}) AND Owner__c = null",
        message="Thing '{recordName}' has no owner",
    )
    client.query_overrides["Owner__c = null"] = [{"Id": ids[1], "Name": "Second"}]
    step = simple_step("things", THING, validation=ValidationSpec(integrity_checks=(check,)))

    result = validator.validate(make_template(step), SOURCE_ORG, TARGET_ORG, {THING: ids})

    issues = result.issues_for("things_without_owner")
    assert len(issues) == 1
    assert issues[0].message == "Thing 'Second' has no owner"
    assert issues[0].record_id == ids[1]
    assert not result.is_valid


def test_non_empty_integrity_check(client, validator):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", 1)]
    check = DataIntegrityCheck(
        name="needs_active",
        query="SELECT Id FROM Thing__c WHERE Status__c = 'Active'",
        message="No active things",
        expected="non_empty",
        severity=Severity.WARNING,
    )
    step = simple_step("things", THING, validation=ValidationSpec(integrity_checks=(check,)))

    result = validator.validate(make_template(step), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert [i.message for i in result.issues_for("needs_active")] == ["No active things"]
    assert result.is_valid


def test_integrity_query_failure_is_warning(client, validator):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", 1)]
    check = DataIntegrityCheck(name="broken", query="SELECT Id FROM Thing__c WHERE Bogus__c = 'x'", message="m")
    client.query_errors["Bogus__c"] = FatalLoadError("No such column", error_code="INVALID_FIELD")
    step = simple_step("things", THING, validation=ValidationSpec(integrity_checks=(check,)))

    result = validator.validate(make_template(step), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert result.issues_for("broken")[0].severity == Severity.WARNING
    assert result.is_valid


def _dependency_template(required=True, warning_message=None):
    check = DependencyCheck(
        name="child_parent",
        source_field="Parent__c",
        target_object=PARENT,
        required=required,
        message="Parent '{sourceValue}' of '{recordName}' is missing",
        warning_message=warning_message,
    )
    return make_template(
        simple_step("parents", PARENT),
        simple_step("children", CHILD, dependencies=("parents",), validation=ValidationSpec(dependency_checks=(check,))),
    )


def test_dependency_satisfied_by_earlier_step_or_target(client, validator):
    _schema(client, PARENT)
    _schema(client, CHILD)
    migrated = _add(client, PARENT, "a02", 1)
    in_target = rid("a02", 2)
    client.add_record(TARGET_ORG, PARENT, {"Id": rid("t02", 2), EXT_FIELD: in_target})
    children = [
        _add(client, CHILD, "a03", 1, Parent__c=migrated),
        _add(client, CHILD, "a03", 2, Parent__c=in_target),
        _add(client, CHILD, "a03", 3),
    ]

    result = validator.validate(_dependency_template(), SOURCE_ORG, TARGET_ORG, {PARENT: [migrated], CHILD: children})

    assert result.issues_for("child_parent") == []
    assert result.is_valid


def test_required_dependency_missing_is_error(client, validator):
    _schema(client, PARENT)
    _schema(client, CHILD)
    missing = rid("a02", 9)
    child = _add(client, CHILD, "a03", 1, Parent__c=missing)

    result = validator.validate(_dependency_template(), SOURCE_ORG, TARGET_ORG, {CHILD: [child]})

    issue = result.issues_for("child_parent")[0]
    assert issue.severity == Severity.ERROR
    assert issue.message == f"Parent '{missing}' of 'Child__c 1' is missing"
    assert issue.record_id == child
    assert issue.step_name == "children"


def test_optional_dependency_missing_is_warning(client, validator):
    _schema(client, PARENT)
    _schema(client, CHILD)
    child = _add(client, CHILD, "a03", 1, Parent__c=rid("a02", 9))

    result = validator.validate(
        _dependency_template(required=False, warning_message="'{recordName}' loses its parent"),
        SOURCE_ORG,
        TARGET_ORG,
        {CHILD: [child]},
    )

    issue = result.issues_for("child_parent")[0]
    assert issue.severity == Severity.WARNING
    assert issue.message == "'Child__c 1' loses its parent"
    assert result.is_valid


def _status_field(values, field_type="picklist"):
    return FieldDescribe(name="Status__c", type=field_type, picklist_values=list(values))


def test_picklist_value_missing_in_target(client, validator):
    _schema(client, THING)
    client.describes[(TARGET_ORG, THING)].fields["Status__c"] = _status_field(["Active", "Inactive"])
    ids = [_add(client, THING, "a01", 1, Status__c="Active"), _add(client, THING, "a01", 2, Status__c="Retired")]
    step = simple_step(
        "things", THING, validation=ValidationSpec(picklist_checks=(PicklistCheck(name="status", field_name="Status__c"),))
    )

    result = validator.validate(make_template(step), SOURCE_ORG, TARGET_ORG, {THING: ids})

    issues = result.issues_for("status")
    assert len(issues) == 1
    assert issues[0].record_id == ids[1]
    assert "'Retired'" in issues[0].message
    assert "Thing__c 2" in issues[0].message


def test_multi_select_picklist_checks_each_value(client, validator):
    _schema(client, THING)
    client.describes[(TARGET_ORG, THING)].fields["Status__c"] = _status_field(["A", "B"], "multipicklist")
    ids = [_add(client, THING, "a01", 1, Status__c="A;C;B")]
    step = simple_step(
        "things", THING, validation=ValidationSpec(picklist_checks=(PicklistCheck(name="status", field_name="Status__c"),))
    )

    result = validator.validate(make_template(step), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert ["'C'" in i.message for i in result.issues_for("status")] == [True]


def test_picklist_field_missing_in_target_is_error(client, validator):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", 1, Status__c="Active")]
    step = simple_step(
        "things", THING, validation=ValidationSpec(picklist_checks=(PicklistCheck(name="status", field_name="Status__c"),))
    )

    result = validator.validate(make_template(step), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert "does not exist" in result.issues_for("status")[0].message


def test_static_allowed_values(client, validator):
    _schema(client, THING)
    ids = [_add(client, THING, "a01", 1, Status__c="Gold")]
    check = PicklistCheck(
        name="tier",
        field_name="Status__c",
        validate_against_target=False,
        allowed_values=("Silver",),
        severity=Severity.WARNING,
    )
    step = simple_step("things", THING, validation=ValidationSpec(picklist_checks=(check,)))

    result = validator.validate(make_template(step), SOURCE_ORG, TARGET_ORG, {THING: ids})

    assert result.issues_for("tier")[0].severity == Severity.WARNING


def test_invalid_template_raises_before_io(client, validator):
    template = make_template(
        simple_step("a", THING, dependencies=("b",)),
        simple_step("b", PARENT, dependencies=("a",)),
    )

    with pytest.raises(ConfigurationError):
        validator.validate(template, SOURCE_ORG, TARGET_ORG, {})
    assert client.probed == []


def test_leave_rules_template_flags_missing_pay_code(client, validator):
    picklists = {
        "tc9_pr__Status__c": FieldDescribe(name="tc9_pr__Status__c", type="picklist", picklist_values=["Active"]),
        "tc9_pr__Type__c": FieldDescribe(name="tc9_pr__Type__c", type="picklist", picklist_values=["Earnings"]),
    }
    for object_type in (PAY_CODE_OBJECT, LEAVE_RULE_OBJECT):
        _schema(client, object_type, extra=picklists, source_ext=MANAGED_FIELD, target_ext=MANAGED_FIELD)
    pay_code = rid("a0P", 1)
    client.add_record(SOURCE_ORG, PAY_CODE_OBJECT, {"Id": pay_code, "Name": "Ordinary", "tc9_pr__Status__c": "Active", "tc9_pr__Type__c": "Earnings"})
    good_rule = _add(client, LEAVE_RULE_OBJECT, "a0L", 1, tc9_pr__Pay_Code__c=pay_code, tc9_pr__Status__c="Active")
    bad_rule = _add(client, LEAVE_RULE_OBJECT, "a0L", 2, tc9_pr__Pay_Code__c=rid("a0P", 9), tc9_pr__Status__c="Active")
    client.query_overrides["tc9_pr__Effective_Date__c = null"] = []

    result = validator.validate(
        LEAVE_RULES_TEMPLATE,
        SOURCE_ORG,
        TARGET_ORG,
        {PAY_CODE_OBJECT: [pay_code], LEAVE_RULE_OBJECT: [good_rule, bad_rule]},
    )

    assert [i.record_id for i in result.errors] == [bad_rule]
    assert result.errors[0].check_name == "leave_rule_pay_code"
    assert "leave_rule_required_fields" in result.checks_run


@pytest.mark.parametrize("message, values, expected", [
    ("'{value}' on {field}", {"value": "X", "field": "F"}, "'X' on F"),
    ("{recordName} {unknown}", {"recordName": None}, " {unknown}"),
])
def test_render_message(message, values, expected):
    assert render_message(message, **values) == expected
