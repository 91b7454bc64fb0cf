import os
import uuid
from datetime import datetime, timedelta

import numpy as np
import pandas as pd

GENDERS = ["male", "female", "other"]
CLAIM_TYPES = ["inpatient", "outpatient", "emergency", "pharmacy"]
CLAIM_STATUSES = ["approved", "pending", "denied"]
DEPARTMENTS = ["cardiology", "neurology", "oncology", "orthopedics", "general medicine"]
# diagnosis -> (symptom, treatment)
DIAGNOSES = {
    "hypertension": ("headache", "medication"),
    "migraine": ("headache", "medication"),
    "fracture": ("pain", "surgery"),
    "pneumonia": ("fever", "antibiotics"),
    "diabetes": ("fatigue", "insulin therapy"),
}
CITIES = {
    "Berlin": (52.52, 13.405),
    "Munich": (48.137, 11.575),
    "Hamburg": (53.551, 9.993),
}


def _random_date(now: datetime, max_days: int) -> str:
    return (now - timedelta(days=int(np.random.randint(0, max_days)))).strftime("%Y-%m-%d")


def generate_patients(num_records: int = 200):
    now = datetime.now()
    records = []
    for i in range(1, num_records + 1):
        city = np.random.choice(list(CITIES))
        lat, lon = CITIES[city]
        # Half the locations are coordinates, the rest free text the geocoder cannot resolve
        location = f"POINT({lon} {lat})" if np.random.rand() < 0.5 else city
        records.append({
            "patient_id": f"PAT{i:05d}",
            "name": f"Patient {i}",
            "age": int(np.random.randint(0, 95)),
            "gender": np.random.choice(GENDERS),
            "location": location,
            "admission_date": _random_date(now, 365),
        })
    return records


def generate_claims(patient_ids, num_records: int = 500, invalid_ratio: float = 0.02):
    now = datetime.now()
    records = []
    for i in range(1, num_records + 1):
        amount = round(float(np.random.uniform(50, 20000)), 2)
        if np.random.rand() < invalid_ratio:
            amount = -amount
        records.append({
            "claim_id": f"CLM{i:06d}",
            "patient_id": np.random.choice(patient_ids),
            "claim_amount": amount,
            "claim_type": np.random.choice(CLAIM_TYPES),
            "claim_date": _random_date(now, 180),
            "status": np.random.choice(CLAIM_STATUSES),
        })
    return records


def generate_treatments(patient_ids, num_records: int = 500, invalid_ratio: float = 0.02):
    now = datetime.now()
    records = []
    for _ in range(num_records):
        diagnosis = np.random.choice(list(DIAGNOSES))
        symptom, treatment = DIAGNOSES[diagnosis]
        patient_id = np.random.choice(patient_ids)
        if np.random.rand() < invalid_ratio:
            patient_id = None
        records.append({
            "treatment_id": f"TRT-{uuid.uuid4().hex[:10]}",
            "patient_id": patient_id,
            "department": np.random.choice(DEPARTMENTS),
            "diagnosis": diagnosis,
            "symptom": symptom,
            "treatment": treatment,
            "cost": round(float(np.random.uniform(20, 15000)), 2),
            "treatment_date": _random_date(now, 180),
        })
    return records


if __name__ == "__main__":
    BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__)))
    output_dir = os.path.join(BASE_DIR, "data", "sample")
    os.makedirs(output_dir, exist_ok=True)

    patients = pd.DataFrame(generate_patients())
    patient_ids = patients["patient_id"].tolist()
    outputs = {
        "patients": patients,
        "claims": pd.DataFrame(generate_claims(patient_ids)),
        "treatments": pd.DataFrame(generate_treatments(patient_ids)),
    }
    for entity, df in outputs.items():
        output_file = os.path.join(output_dir, f"{entity}.csv")
        df.to_csv(output_file, index=False)
        print(f"Generated {len(df)} {entity} at: {output_file}")
