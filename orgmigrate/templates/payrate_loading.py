"""Pay rate loading template."""

from ..models.template import (
    EXTERNAL_ID_PLACEHOLDER,
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

PAYRATE_LOADING_OBJECT = "tc9_et__PayRate_Loading__c"

PICKLIST_FIELDS = (
    "tc9_et__Status__c",
    "tc9_et__Rate_Loading_Type__c",
    "tc9_et__Margin_Type__c",
    "tc9_et__Compliance_Type__c",
)
TEXT_FIELDS = PICKLIST_FIELDS + (
    "tc9_et__Pay_Rate_Name__c",
    "tc9_et__Rate_Description__c",
    "tc9_et__Rate_Loading_Code__c",
    "tc9_et__Rate_Loading_Group__c",
    "tc9_et__Rate_Loading_Selection__c",
    "tc9_et__Rate_Exemptions__c",
    "tc9_et__Shift_Type__c",
    "tc9_et__State__c",
    "tc9_et__XERO_Code__c",
    "tc9_et__Xero_Code_Long__c",
    "tc9_et__Bill_Rounding__c",
    "tc9_et__Pay_Rounding__c",
)
NUMBER_FIELDS = (
    "tc9_et__Multiplier__c",
    "tc9_et__Percentage__c",
    "tc9_et__Priority__c",
    "tc9_et__Bill_Rounding_Margin__c",
    "tc9_et__Pay_Rounding_Margin__c",
    "tc9_et__Work_Order_Margin__c",
    "tc9_et__Version_Number__c",
    "tc9_et__Test_Score__c",
)
DATE_FIELDS = ("tc9_et__Effective_Date__c", "tc9_et__End_Date__c", "tc9_et__Approval_Date__c")
FLAG_FIELDS = (
    "tc9_et__is_Active__c",
    "tc9_et__All_Branches__c",
    "tc9_et__All_Sites__c",
    "tc9_et__All_States__c",
    "tc9_et__Bill_Exempt__c",
    "tc9_et__Pay_Exempt__c",
    "tc9_et__Bill_Report_Exclude__c",
    "tc9_et__Pay_Report_Exclude__c",
    "tc9_et__Ignore_for_RRD__c",
    "tc9_et__Recalculate_Rates__c",
)

payrate_loading_step = ETLStep(
    name="payrate_loading",
    description="Pay rate loadings",
    extract=ExtractSpec(
        object_type=PAYRATE_LOADING_OBJECT,
        query=select_query(
            TEXT_FIELDS + NUMBER_FIELDS + DATE_FIELDS + FLAG_FIELDS,
            PAYRATE_LOADING_OBJECT,
            "Id IN ({selectedRecordIds})",
        ),
    ),
    transform=TransformSpec(field_mappings=(
        (FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER), FieldMapping("Name", "Name", required=True))
        + copy_fields(TEXT_FIELDS)
        + number_fields(NUMBER_FIELDS)
        + date_fields(DATE_FIELDS)
        + flag_fields(FLAG_FIELDS)
    )),
    load=LoadSpec(
        object_type=PAYRATE_LOADING_OBJECT,
        batch_size=200,
        retry=RetryPolicy(max_attempts=3, backoff_seconds=5.0),
    ),
    validation=ValidationSpec(picklist_checks=tuple(
        PicklistCheck(
            name=f"payrate_loading_{field_name[len('tc9_et__'):-len('__c')].lower()}",
            field_name=field_name,
            severity=Severity.WARNING,
        )
        for field_name in PICKLIST_FIELDS
    )),
)


PAYRATE_LOADING_TEMPLATE = MigrationTemplate(
    id="payroll-payrate-loading",
    name="Pay Rate Loading",
    description="Migrate pay rate loadings between orgs",
    category="payroll",
    version="1.0.0",
    complexity="moderate",
    estimated_duration_minutes=30,
    tags=("payroll", "pay-rate", "loading"),
    steps=(payrate_loading_step,),
)
