# FILE: app/services/catalog.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from app.core.exceptions import NotFound, InvalidState
from app.core.rbac import Actor
from app.db.session import commit_or_conflict
from app.models.medicine import (
    Medicine,
    MedicineIngredient,
    MedicineContraindication,
    MedicineInteraction,
)
from app.schemas.medicine import MedicineCreate, InteractionCreate

logger = logging.getLogger(__name__)


# ---------- Matching helpers ----------


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _text_matches(a: Optional[str], b: Optional[str]) -> bool:
    """
    Case-insensitive substring match in either direction.
    Blank strings never match.
    """
    x, y = _norm(a), _norm(b)
    if not x or not y:
        return False
    return x in y or y in x


def _contains(haystack: Optional[str], needle: Optional[str]) -> bool:
    """Case-insensitive `needle in haystack`; a blank needle never matches."""
    n = _norm(needle)
    return bool(n) and n in _norm(haystack)


def _ordered_pair(a: int, b: int) -> Tuple[int, int]:
    return (a, b) if a < b else (b, a)


# ---------- Number generator ----------


def _generate_medicine_code(db: Session, is_controlled: bool) -> str:
    """
    MED000001 / CTL000001 (controlled substances get their own series)
    """
    prefix = "CTL" if is_controlled else "MED"
    last_code = (db.query(Medicine.code).filter(
        Medicine.code.like(f"{prefix}%")).order_by(
            Medicine.code.desc()).first())
    next_seq = 1
    if last_code and last_code[0]:
        try:
            next_seq = int(last_code[0][len(prefix):]) + 1
        except ValueError:
            next_seq = 1
    return f"{prefix}{next_seq:06d}"


# ---------- Reads ----------


def get_medicine(db: Session, medicine_id: int) -> Medicine:
    med = (db.query(Medicine).options(
        selectinload(Medicine.ingredients),
        selectinload(Medicine.contraindications),
    ).filter(Medicine.id == medicine_id).first())
    if not med:
        raise NotFound(f"Medicine {medicine_id} not found.")
    return med


def get_medicines(db: Session, medicine_ids: Iterable[int]) -> Dict[int, Medicine]:
    """
    Bulk fetch; NotFound names every id that does not exist.
    """
    wanted = set(medicine_ids)
    if not wanted:
        return {}
    rows = (db.query(Medicine).options(
        selectinload(Medicine.ingredients),
        selectinload(Medicine.contraindications),
    ).filter(Medicine.id.in_(wanted)).all())
    found = {m.id: m for m in rows}
    missing = sorted(wanted - set(found))
    if missing:
        raise NotFound(
            f"Medicine(s) not found: {', '.join(str(i) for i in missing)}",
            details={"medicine_ids": missing},
        )
    return found


def search_medicines(
    db: Session,
    q: Optional[str] = None,
    *,
    limit: int = 50,
) -> List[Medicine]:
    query = db.query(Medicine).options(
        selectinload(Medicine.ingredients),
        selectinload(Medicine.contraindications),
    )
    term = (q or "").strip()
    if term:
        like = f"%{term}%"
        query = query.filter(
            or_(
                Medicine.name.ilike(like),
                Medicine.generic_name.ilike(like),
                Medicine.brand_name.ilike(like),
                Medicine.code.ilike(like),
            ))
    return query.order_by(Medicine.name.asc(), Medicine.id.asc()).limit(limit).all()


# ---------- Writes ----------


def create_medicine(db: Session, data: MedicineCreate, actor: Actor | None = None) -> Medicine:
    med = Medicine(
        code=_generate_medicine_code(db, data.is_controlled),
        name=data.name.strip(),
        generic_name=data.generic_name.strip(),
        brand_name=data.brand_name.strip(),
        strength=data.strength,
        dosage_form=data.dosage_form,
        drug_class=data.drug_class,
        unit=data.unit,
        is_controlled=data.is_controlled,
        status=data.status,
        unit_price=data.unit_price,
        reorder_level=data.reorder_level,
        minimum_stock=data.minimum_stock,
        created_by_id=actor.subject_id if actor else None,
    )
    for ing in data.ingredients:
        med.ingredients.append(
            MedicineIngredient(
                name=ing.name.strip(),
                ingredient_class=ing.ingredient_class.strip(),
            ))
    for ci in data.contraindications:
        med.contraindications.append(
            MedicineContraindication(
                condition=ci.condition.strip(),
                severity=ci.severity,
                description=ci.description,
            ))

    db.add(med)
    commit_or_conflict(db)
    db.refresh(med)
    logger.info("Medicine created id=%s code=%s name=%s", med.id, med.code, med.name)
    return med


def add_interaction(db: Session, data: InteractionCreate) -> MedicineInteraction:
    """
    Record an interaction between two medicines. The pair is stored once,
    smaller id first, so it reads the same from either side. Re-recording
    an existing pair updates its severity / text.
    """
    if data.medicine_a_id == data.medicine_b_id:
        raise InvalidState("An interaction needs two different medicines.")
    get_medicines(db, [data.medicine_a_id, data.medicine_b_id])

    a, b = _ordered_pair(data.medicine_a_id, data.medicine_b_id)
    row = (db.query(MedicineInteraction).filter(
        MedicineInteraction.medicine_a_id == a,
        MedicineInteraction.medicine_b_id == b,
    ).first())
    if row is None:
        row = MedicineInteraction(medicine_a_id=a, medicine_b_id=b)
        db.add(row)

    row.severity = data.severity
    row.description = data.description
    row.management = data.management

    commit_or_conflict(db)
    db.refresh(row)
    logger.info("Interaction recorded pair=(%s,%s) severity=%s", a, b, row.severity.value)
    return row


# ---------- Safety checks ----------


def find_interactions(db: Session, medicine_ids: Iterable[int]) -> List[Dict[str, Any]]:
    """
    Every catalogued interaction among the given medicines.
    Each finding: {pair: [lo, hi], severity, description, management}.
    """
    ids = sorted(set(medicine_ids))
    get_medicines(db, ids)
    if len(ids) < 2:
        return []

    rows = (db.query(MedicineInteraction).filter(
        MedicineInteraction.medicine_a_id.in_(ids),
        MedicineInteraction.medicine_b_id.in_(ids),
    ).order_by(MedicineInteraction.medicine_a_id.asc(),
               MedicineInteraction.medicine_b_id.asc()).all())

    return [{
        "pair": [r.medicine_a_id, r.medicine_b_id],
        "severity": r.severity,
        "description": r.description or "",
        "management": r.management or "",
    } for r in rows]


def allergy_matches(med: Medicine, patient_allergens: Iterable[str]) -> List[Dict[str, str]]:
    """
    (allergen, ingredient) pairs where the allergen text occurs in the
    ingredient name or its class. One direction only: "Iron" must not
    match an "Environmental pollen" allergy.
    """
    hits: List[Dict[str, str]] = []
    allergens = [a for a in patient_allergens if _norm(a)]
    for ing in med.ingredients:
        for allergen in allergens:
            if _contains(ing.name, allergen) or _contains(ing.ingredient_class, allergen):
                hits.append({"allergen": allergen, "ingredient": ing.name})
    return hits


def check_allergy_conflict(db: Session, medicine_id: int, patient_allergens: Iterable[str]) -> bool:
    med = get_medicine(db, medicine_id)
    return bool(allergy_matches(med, patient_allergens))


def contraindication_matches(med: Medicine, patient_conditions: Iterable[str]) -> List[str]:
    conditions = [c for c in patient_conditions if _norm(c)]
    out: List[str] = []
    for ci in med.contraindications:
        if any(_text_matches(ci.condition, c) for c in conditions):
            out.append(ci.condition)
    return out


def check_contraindications(db: Session, medicine_id: int, patient_conditions: Iterable[str]) -> List[str]:
    """
    Contraindicated conditions of the medicine that the patient has.
    """
    med = get_medicine(db, medicine_id)
    return contraindication_matches(med, patient_conditions)
