"""
Constants shared across the Table One pipeline: cohort inclusion criteria,
comorbidity categories, stratification labels and the normal quantile used for
every 95% confidence interval.
"""
from typing import List

# Cohort inclusion criteria (age in full years at ICU admission, inclusive)
MIN_AGE = 16
MAX_AGE = 95

# Time conversion constant
SECONDS_PER_DAY = 86400.0

# Two-sided 95% normal quantile
Z_95 = 1.96

# Patients with more than this many comorbidities are multimorbid
MULTIMORBIDITY_THRESHOLD = 1

# Elixhauser comorbidity flags (Quan coding), one column per disease category
COMORBIDITY_CATEGORIES: List[str] = [
    "congestive_heart_failure",
    "cardiac_arrhythmias",
    "valvular_disease",
    "pulmonary_circulation",
    "peripheral_vascular",
    "hypertension",
    "paralysis",
    "other_neurological",
    "chronic_pulmonary",
    "diabetes_uncomplicated",
    "diabetes_complicated",
    "hypothyroidism",
    "renal_failure",
    "liver_disease",
    "peptic_ulcer",
    "aids",
    "lymphoma",
    "metastatic_cancer",
    "solid_tumor",
    "rheumatoid_arthritis",
    "coagulopathy",
    "obesity",
    "weight_loss",
    "fluid_electrolyte",
    "blood_loss_anemia",
    "deficiency_anemias",
    "alcohol_abuse",
    "drug_abuse",
    "psychoses",
    "depression",
]

# Stratification keys and their labels
ADMISSION_TYPE = "admission_type"
GENDER = "gender"
STRATIFICATION_KEYS: List[str] = [ADMISSION_TYPE, GENDER]

ELECTIVE_RAW = "ELECTIVE"
ELECTIVE_LABEL = "Elective"
NON_ELECTIVE_LABEL = "Non-Elective"

EXPECTED_GENDERS: List[str] = ["F", "M"]
UNKNOWN_GENDER_LABEL = "Unknown"

# How to treat patients whose earliest ICU stays share the same intime
TIE_POLICIES: List[str] = ["keep", "raise"]
