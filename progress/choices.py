SIDE_LEFT = "LEFT"
SIDE_RIGHT = "RIGHT"
SIDE_BOTH = "BOTH"

SIDE_CHOICES = (
    (SIDE_LEFT, "Left"),
    (SIDE_RIGHT, "Right"),
    (SIDE_BOTH, "Both"),
)

MEASURE_LINEAR = "LINEAR"
MEASURE_POINT = "POINT"

MEASURE_CHOICES = (
    (MEASURE_LINEAR, "Linear (length)"),
    (MEASURE_POINT, "Point (structure count)"),
)

INSPECTION_PENDING = "PENDING"
INSPECTION_SCHEDULED = "SCHEDULED"
INSPECTION_SUBMITTED = "SUBMITTED"
INSPECTION_IN_PROGRESS = "IN_PROGRESS"
INSPECTION_APPROVED = "APPROVED"

INSPECTION_STATUS_CHOICES = (
    (INSPECTION_PENDING, "Pending"),
    (INSPECTION_SCHEDULED, "Scheduled"),
    (INSPECTION_SUBMITTED, "Submitted"),
    (INSPECTION_IN_PROGRESS, "In progress"),
    (INSPECTION_APPROVED, "Approved"),
)

BOQ_SHEET_CONTRACT = "CONTRACT"
BOQ_SHEET_ACTUAL = "ACTUAL"

BOQ_SHEET_CHOICES = (
    (BOQ_SHEET_CONTRACT, "Contract"),
    (BOQ_SHEET_ACTUAL, "Actual"),
)

BOQ_TONE_SECTION = "SECTION"
BOQ_TONE_SUBSECTION = "SUBSECTION"
BOQ_TONE_ITEM = "ITEM"
BOQ_TONE_TOTAL = "TOTAL"

BOQ_TONE_CHOICES = (
    (BOQ_TONE_SECTION, "Section"),
    (BOQ_TONE_SUBSECTION, "Subsection"),
    (BOQ_TONE_ITEM, "Item"),
    (BOQ_TONE_TOTAL, "Total"),
)
