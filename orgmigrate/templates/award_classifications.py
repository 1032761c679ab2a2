"""Award classifications and levels template."""

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
from .fields import select_query

AWARD_OBJECT = "tc9_et__Award_Classifications_and_Levels__c"

award_step = ETLStep(
    name="award_classifications_and_levels",
    description="Award classifications and levels",
    extract=ExtractSpec(
        object_type=AWARD_OBJECT,
        query=select_query(("tc9_et__Status__c",), AWARD_OBJECT, "Id IN ({selectedRecordIds})"),
    ),
    transform=TransformSpec(field_mappings=(
        FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER),
        FieldMapping("Name", "Name", required=True),
        FieldMapping("tc9_et__Status__c", "tc9_et__Status__c"),
    )),
    load=LoadSpec(
        object_type=AWARD_OBJECT,
        batch_size=200,
        retry=RetryPolicy(max_attempts=3, backoff_seconds=5.0),
    ),
    validation=ValidationSpec(
        integrity_checks=(
            DataIntegrityCheck(
                name="award_name_present",
                query=f"SELECT Id, Name FROM {AWARD_OBJECT} WHERE Id IN ({{selectedRecordIds}}) AND Name = null",
                message="Award classification {recordName} has no name",
            ),
        ),
        picklist_checks=(
            PicklistCheck(name="award_status", field_name="tc9_et__Status__c", severity=Severity.WARNING),
        ),
    ),
)


AWARD_CLASSIFICATIONS_TEMPLATE = MigrationTemplate(
    id="payroll-award-classifications-and-levels",
    name="Award Classifications and Levels",
    description="Migrate award classifications and levels between orgs",
    category="payroll",
    version="1.0.0",
    complexity="simple",
    estimated_duration_minutes=5,
    tags=("payroll", "award", "classification"),
    steps=(award_step,),
)
