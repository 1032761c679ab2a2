"""Payroll calendar template."""

from ..models.template import (
    EXTERNAL_ID_PLACEHOLDER,
    DataIntegrityCheck,
    ETLStep,
    ExtractSpec,
    FieldMapping,
    LoadSpec,
    MigrationTemplate,
    PicklistCheck,
    RetryPolicy,
    Severity,
    TransformSpec,
    ValidationSpec,
)
from .fields import copy_fields, date_fields, flag_fields, number_fields, select_query

CALENDAR_OBJECT = "tc9_pr__Calendar__c"

TEXT_FIELDS = (
    "tc9_pr__Country__c",
    "tc9_pr__State_Province__c",
    "tc9_pr__City__c",
    "tc9_pr__Description__c",
    "tc9_pr__Display_Text__c",
    "tc9_pr__Display_Image_URL__c",
)
DATE_FIELDS = ("tc9_pr__Public_Holiday_Date__c", "tc9_pr__Start_Date__c", "tc9_pr__End_Date__c")
NUMBER_FIELDS = ("tc9_pr__Number_of_Calendar_Periods__c", "tc9_pr__Payroll_Multiplier__c")
FLAG_FIELDS = (
    "tc9_pr__Is_Payroll__c",
    "tc9_pr__Is_Public_Holiday__c",
    "tc9_pr__Allow_Changes_To_Pay_Code__c",
    "tc9_pr__Deduct_from_Accrual__c",
)

calendar_step = ETLStep(
    name="calendar",
    description="Payroll and public holiday calendars",
    extract=ExtractSpec(
        object_type=CALENDAR_OBJECT,
        query=select_query(
            ("tc9_pr__Type__c",) + TEXT_FIELDS + DATE_FIELDS + NUMBER_FIELDS + FLAG_FIELDS,
            CALENDAR_OBJECT,
            "Id IN ({selectedRecordIds})",
        ),
    ),
    transform=TransformSpec(field_mappings=(
        (
            FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER),
            FieldMapping("Name", "Name", required=True),
            FieldMapping("tc9_pr__Type__c", "tc9_pr__Type__c", required=True),
        )
        + copy_fields(TEXT_FIELDS)
        + date_fields(DATE_FIELDS)
        + number_fields(NUMBER_FIELDS)
        + flag_fields(FLAG_FIELDS)
    )),
    load=LoadSpec(
        object_type=CALENDAR_OBJECT,
        batch_size=200,
        retry=RetryPolicy(max_attempts=3, backoff_seconds=5.0),
    ),
    validation=ValidationSpec(
        integrity_checks=(
            DataIntegrityCheck(
                name="calendar_type_present",
                query=(
                    f"SELECT Id, Name FROM {CALENDAR_OBJECT} WHERE Id IN ({{selectedRecordIds}}) "
                    f"AND tc9_pr__Type__c = null"
                ),
                message="Calendar '{recordName}' has no type",
            ),
        ),
        picklist_checks=(
            PicklistCheck(name="calendar_type", field_name="tc9_pr__Type__c"),
            PicklistCheck(name="calendar_country", field_name="tc9_pr__Country__c", severity=Severity.WARNING),
            PicklistCheck(
                name="calendar_state_province", field_name="tc9_pr__State_Province__c", severity=Severity.WARNING
            ),
        ),
    ),
)


CALENDAR_TEMPLATE = MigrationTemplate(
    id="payroll-calendar",
    name="Calendar",
    description="Migrate payroll calendars and public holidays between orgs",
    category="payroll",
    version="1.0.0",
    complexity="simple",
    estimated_duration_minutes=15,
    tags=("payroll", "calendar", "public-holiday"),
    steps=(calendar_step,),
)
