"""Pay code template."""

from ..models.template import (
    EXTERNAL_ID_PLACEHOLDER,
    ETLStep,
    ExtractSpec,
    FieldMapping,
    LoadOperation,
    LoadSpec,
    MigrationTemplate,
    PicklistCheck,
    RetryPolicy,
    TransformKind,
    TransformSpec,
    ValidationSpec,
)

PAY_CODE_OBJECT = "tc9_pr__Pay_Code__c"

PAY_CODE_QUERY = (
    "SELECT Id, Name, tc9_pr__Code__c, tc9_pr__Type__c, tc9_pr__Status__c, tc9_pr__Rate__c, "
    "{externalIdField} FROM tc9_pr__Pay_Code__c WHERE Id IN ({selectedRecordIds})"
)


def pay_code_step(optional: bool = False) -> ETLStep:
    """The pay code step, shared by templates that reference pay codes."""
    return ETLStep(
        name="pay_codes",
        description="Pay codes",
        optional=optional,
        extract=ExtractSpec(object_type=PAY_CODE_OBJECT, query=PAY_CODE_QUERY),
        transform=TransformSpec(field_mappings=(
            FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER),
            FieldMapping("Name", "Name", required=True),
            FieldMapping("tc9_pr__Code__c", "tc9_pr__Code__c", required=True),
            FieldMapping("tc9_pr__Type__c", "tc9_pr__Type__c"),
            FieldMapping("tc9_pr__Status__c", "tc9_pr__Status__c"),
            FieldMapping(
                "tc9_pr__Rate__c",
                "tc9_pr__Rate__c",
                kind=TransformKind.COMPUTED,
                options={"function": "to_number", "precision": 4},
            ),
        )),
        load=LoadSpec(
            object_type=PAY_CODE_OBJECT,
            operation=LoadOperation.UPSERT,
            batch_size=200,
            retry=RetryPolicy(max_attempts=3, backoff_seconds=1.0),
        ),
        validation=ValidationSpec(picklist_checks=(
            PicklistCheck(name="pay_code_type", field_name="tc9_pr__Type__c"),
            PicklistCheck(name="pay_code_status", field_name="tc9_pr__Status__c"),
        )),
    )


PAY_CODES_TEMPLATE = MigrationTemplate(
    id="payroll-pay-codes",
    name="Pay Codes",
    description="Migrate pay codes between orgs",
    category="payroll",
    version="1.0.0",
    complexity="simple",
    estimated_duration_minutes=5,
    tags=("payroll", "pay-codes"),
    steps=(pay_code_step(),),
)
