"""Leave rule template: pay codes first, then leave rules referencing them."""

from ..models.template import (
    EXTERNAL_ID_PLACEHOLDER,
    DataIntegrityCheck,
    DependencyCheck,
    ETLStep,
    ExtractSpec,
    FieldMapping,
    LoadOperation,
    LoadSpec,
    MigrationTemplate,
    PicklistCheck,
    RetryPolicy,
    Severity,
    TransformKind,
    TransformSpec,
    ValidationSpec,
)
from .pay_codes import PAY_CODE_OBJECT, pay_code_step

LEAVE_RULE_OBJECT = "tc9_pr__Leave_Rule__c"

LEAVE_RULE_QUERY = (
    "SELECT Id, Name, tc9_pr__Effective_Date__c, tc9_pr__Status__c, tc9_pr__Available_Pay_Rates__c, "
    "tc9_pr__Allow_Pay_in_Advance__c, tc9_pr__Skip_Manager_Approval__c, "
    "tc9_pr__Pay_Code__c, tc9_pr__Unpaid_Pay_Code__c, {externalIdField} "
    "FROM tc9_pr__Leave_Rule__c WHERE Id IN ({selectedRecordIds})"
)

LEAVE_RULE_RETRY = RetryPolicy(
    max_attempts=3,
    backoff_seconds=2.0,
    retryable_codes=frozenset({
        "UNABLE_TO_LOCK_ROW",
        "INSUFFICIENT_ACCESS_ON_CROSS_REFERENCE_ENTITY",
        "REQUEST_LIMIT_EXCEEDED",
    }),
)

leave_rule_step = ETLStep(
    name="leave_rules",
    description="Leave rules with their paid and unpaid pay codes",
    dependencies=("pay_codes",),
    extract=ExtractSpec(object_type=LEAVE_RULE_OBJECT, query=LEAVE_RULE_QUERY),
    transform=TransformSpec(field_mappings=(
        FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER),
        FieldMapping("Name", "Name", required=True),
        FieldMapping(
            "tc9_pr__Effective_Date__c",
            "tc9_pr__Effective_Date__c",
            kind=TransformKind.COMPUTED,
            options={"function": "to_date"},
        ),
        FieldMapping("tc9_pr__Status__c", "tc9_pr__Status__c"),
        FieldMapping(
            "tc9_pr__Available_Pay_Rates__c",
            "tc9_pr__Available_Pay_Rates__c",
            kind=TransformKind.COMPUTED,
            options={"function": "to_number"},
        ),
        FieldMapping(
            "tc9_pr__Allow_Pay_in_Advance__c",
            "tc9_pr__Allow_Pay_in_Advance__c",
            kind=TransformKind.COMPUTED,
            options={"function": "to_boolean"},
        ),
        FieldMapping(
            "tc9_pr__Skip_Manager_Approval__c",
            "tc9_pr__Skip_Manager_Approval__c",
            kind=TransformKind.COMPUTED,
            options={"function": "to_boolean"},
        ),
        FieldMapping(
            "tc9_pr__Pay_Code__c",
            "tc9_pr__Pay_Code__c",
            kind=TransformKind.LOOKUP,
            required=True,
            options={"lookup_object": PAY_CODE_OBJECT},
        ),
        FieldMapping(
            "tc9_pr__Unpaid_Pay_Code__c",
            "tc9_pr__Unpaid_Pay_Code__c",
            kind=TransformKind.LOOKUP,
            options={"lookup_object": PAY_CODE_OBJECT},
        ),
    )),
    load=LoadSpec(
        object_type=LEAVE_RULE_OBJECT,
        operation=LoadOperation.UPSERT,
        batch_size=200,
        retry=LEAVE_RULE_RETRY,
    ),
    validation=ValidationSpec(
        integrity_checks=(
            DataIntegrityCheck(
                name="leave_rule_required_fields",
                query=(
                    "SELECT Id, Name FROM tc9_pr__Leave_Rule__c WHERE Id IN ({selectedRecordIds}) "
                    "AND (tc9_pr__Pay_Code__c = null OR tc9_pr__Effective_Date__c = null)"
                ),
                message="Leave rule '{recordName}' is missing its pay code or effective date",
                expected="empty",
                severity=Severity.ERROR,
            ),
        ),
        dependency_checks=(
            DependencyCheck(
                name="leave_rule_pay_code",
                source_field="tc9_pr__Pay_Code__c",
                target_object=PAY_CODE_OBJECT,
                required=True,
                message="Pay code '{sourceValue}' used by leave rule '{recordName}' is not in the target org or the migration",
            ),
            DependencyCheck(
                name="leave_rule_unpaid_pay_code",
                source_field="tc9_pr__Unpaid_Pay_Code__c",
                target_object=PAY_CODE_OBJECT,
                required=False,
                message="Unpaid pay code '{sourceValue}' used by leave rule '{recordName}' is missing",
                warning_message=(
                    "Unpaid pay code '{sourceValue}' used by leave rule '{recordName}' is not in the target org; "
                    "the rule will fail to load unless it is migrated too"
                ),
            ),
        ),
        picklist_checks=(
            PicklistCheck(name="leave_rule_status", field_name="tc9_pr__Status__c"),
        ),
    ),
)


LEAVE_RULES_TEMPLATE = MigrationTemplate(
    id="payroll-leave-rules",
    name="Leave Rules",
    description="Migrate leave rules and the pay codes they reference",
    category="payroll",
    version="1.0.0",
    complexity="moderate",
    estimated_duration_minutes=10,
    tags=("payroll", "leave"),
    steps=(pay_code_step(optional=True), leave_rule_step),
)
