"""Interpretation rule template: master rules, their variation rules and breakpoints."""

from ..models.template import (
    EXTERNAL_ID_PLACEHOLDER,
    DataIntegrityCheck,
    DependencyCheck,
    ETLStep,
    ExtractSpec,
    FieldMapping,
    LoadSpec,
    MigrationTemplate,
    PicklistCheck,
    Severity,
    TransformKind,
    TransformSpec,
    ValidationSpec,
)
from .fields import copy_fields, flag_fields, number_fields, select_query
from .pay_codes import PAY_CODE_OBJECT

RULE_OBJECT = "tc9_et__Interpretation_Rule__c"
BREAKPOINT_OBJECT = "tc9_et__Interpretation_Breakpoint__c"
VARIATION_RECORD_TYPE = "Interpretation Variation Rule"

STANDARD_HOURS_FIELDS = tuple(
    f"tc9_et__{day}_Standard_Hours__c"
    for day in ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday", "Public_Holiday")
)

MASTER_TEXT_FIELDS = (
    "tc9_et__Status__c",
    "tc9_et__Short_Description__c",
    "tc9_et__Long_Description__c",
    "tc9_et__Timesheet_Frequency__c",
)

BREAKPOINT_TEXT_FIELDS = (
    "tc9_et__Breakpoint_Type__c",
    "tc9_et__Additional_Interpretation_BP_Details__c",
    "tc9_et__Allowance_Type__c",
    "tc9_et__Days_Leave_Applies_To_OT_And_Frequency__c",
    "tc9_et__End_Time__c",
    "tc9_et__Start_Time__c",
)

BREAKPOINT_NUMBER_FIELDS = (
    "tc9_et__Start_Threshold__c",
    "tc9_et__End_Threshold__c",
    "tc9_et__Daily_Quantity__c",
    "tc9_et__Minimum_Paid_Hours__c",
)

BREAKPOINT_FLAG_FIELDS = (
    "tc9_et__Has_Saturday_Rule__c",
    "tc9_et__Has_Sunday_Rule__c",
    "tc9_et__No_Cap_Required__c",
    "tc9_et__Overtime_Breakpoint__c",
    "tc9_et__Pay_Partial_Quantity__c",
    "tc9_et__Reset_After_Payment__c",
)


def _rule_lookup(required: bool = True) -> FieldMapping:
    return FieldMapping(
        "tc9_et__Interpretation_Rule__c",
        "tc9_et__Interpretation_Rule__c",
        kind=TransformKind.LOOKUP,
        required=required,
        options={"lookup_object": RULE_OBJECT},
    )


master_step = ETLStep(
    name="interpretation_rule_master",
    description="Master interpretation rules",
    extract=ExtractSpec(
        object_type=RULE_OBJECT,
        query=select_query(
            MASTER_TEXT_FIELDS + STANDARD_HOURS_FIELDS + ("tc9_et__Apply_4_Week_Frequency__c", "tc9_et__Pay_Code__c"),
            RULE_OBJECT,
            f"RecordType.Name != '{VARIATION_RECORD_TYPE}'",
        ),
    ),
    transform=TransformSpec(field_mappings=(
        (FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER), FieldMapping("Name", "Name", required=True))
        + copy_fields(MASTER_TEXT_FIELDS)
        + number_fields(STANDARD_HOURS_FIELDS)
        + flag_fields(("tc9_et__Apply_4_Week_Frequency__c",))
        + (
            FieldMapping(
                "tc9_et__Pay_Code__c",
                "tc9_et__Pay_Code__c",
                kind=TransformKind.LOOKUP,
                options={"lookup_object": PAY_CODE_OBJECT},
            ),
        )
    )),
    load=LoadSpec(object_type=RULE_OBJECT, batch_size=100),
    validation=ValidationSpec(
        integrity_checks=(
            DataIntegrityCheck(
                name="active_rule_without_breakpoints",
                query=(
                    f"SELECT Id, Name FROM {RULE_OBJECT} WHERE Id IN ({{selectedRecordIds}}) "
                    f"AND tc9_et__Status__c = 'Active' AND Id NOT IN "
                    f"(SELECT tc9_et__Interpretation_Rule__c FROM {BREAKPOINT_OBJECT} "
                    f"WHERE tc9_et__Interpretation_Rule__c != null)"
                ),
                message="Active interpretation rule '{recordName}' has no breakpoints",
                expected="empty",
                severity=Severity.WARNING,
            ),
        ),
        dependency_checks=(
            DependencyCheck(
                name="interpretation_rule_pay_code",
                source_field="tc9_et__Pay_Code__c",
                target_object=PAY_CODE_OBJECT,
                required=False,
                message="Pay code '{sourceValue}' used by interpretation rule '{recordName}' is missing",
                warning_message=(
                    "Pay code '{sourceValue}' used by interpretation rule '{recordName}' is not in the target org"
                ),
            ),
        ),
        picklist_checks=(
            PicklistCheck(name="interpretation_rule_status", field_name="tc9_et__Status__c"),
            PicklistCheck(name="interpretation_rule_frequency", field_name="tc9_et__Timesheet_Frequency__c"),
        ),
    ),
)

variation_step = ETLStep(
    name="interpretation_rule_variation",
    description="Variation rules of the migrated master rules",
    dependencies=("interpretation_rule_master",),
    optional=True,
    extract=ExtractSpec(
        object_type=RULE_OBJECT,
        query=select_query(
            ("tc9_et__Interpretation_Rule__c", "tc9_et__Variation_Type__c", "tc9_et__Variation_Record_Type__c"),
            RULE_OBJECT,
            f"RecordType.Name = '{VARIATION_RECORD_TYPE}'",
        ),
        parent_step="interpretation_rule_master",
        parent_field="tc9_et__Interpretation_Rule__c",
    ),
    transform=TransformSpec(field_mappings=(
        FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER),
        FieldMapping("Name", "Name", required=True),
        FieldMapping("tc9_et__Variation_Type__c", "tc9_et__Variation_Type__c"),
        FieldMapping("tc9_et__Variation_Record_Type__c", "tc9_et__Variation_Record_Type__c"),
        _rule_lookup(),
    )),
    load=LoadSpec(object_type=RULE_OBJECT, batch_size=100),
)

breakpoint_step = ETLStep(
    name="interpretation_breakpoints",
    description="Breakpoints of the migrated master rules",
    dependencies=("interpretation_rule_master",),
    extract=ExtractSpec(
        object_type=BREAKPOINT_OBJECT,
        query=select_query(
            ("tc9_et__Interpretation_Rule__c",)
            + BREAKPOINT_TEXT_FIELDS + BREAKPOINT_NUMBER_FIELDS + BREAKPOINT_FLAG_FIELDS,
            BREAKPOINT_OBJECT,
        ),
        parent_step="interpretation_rule_master",
        parent_field="tc9_et__Interpretation_Rule__c",
    ),
    transform=TransformSpec(field_mappings=(
        (FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER), FieldMapping("Name", "Name"))
        + copy_fields(BREAKPOINT_TEXT_FIELDS)
        + number_fields(BREAKPOINT_NUMBER_FIELDS)
        + flag_fields(BREAKPOINT_FLAG_FIELDS)
        + (_rule_lookup(),)
    )),
    load=LoadSpec(object_type=BREAKPOINT_OBJECT, batch_size=200),
    validation=ValidationSpec(
        picklist_checks=(
            PicklistCheck(name="breakpoint_type", field_name="tc9_et__Breakpoint_Type__c"),
        ),
    ),
)


INTERPRETATION_RULES_TEMPLATE = MigrationTemplate(
    id="payroll-interpretation-rules",
    name="Interpretation Rules",
    description="Migrate interpretation rules with their variation rules and breakpoints",
    category="payroll",
    version="1.0.0",
    complexity="complex",
    estimated_duration_minutes=20,
    tags=("payroll", "interpretation", "award"),
    steps=(master_step, variation_step, breakpoint_step),
)
