import logging
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.db import get_db
from app.deps.business import load_business
from app.errors import NotFound, RowCeilingExceeded, TransientStoreError, ValidationError
from app.models.import_run import ImportRun
from app.schemas.import_run import ImportRunOut
from app.services.csv_rows import parse_csv_text
from app.services.import_reconciler import fail_run, run_import
from app.services.notification_dispatcher import NotificationDispatcher, get_dispatcher


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])

# files up to this size are reconciled inside the request
ASYNC_IMPORT_THRESHOLD = 1000
MAX_IMPORT_ROWS = 20000

ACCEPTED_CONTENT_TYPES = {"text/csv", "application/vnd.ms-excel", "text/plain", "application/csv"}


def _is_csv(file: UploadFile) -> bool:
    if file.filename and file.filename.lower().endswith(".csv"):
        return True
    return (file.content_type or "").split(";")[0].strip() in ACCEPTED_CONTENT_TYPES


@router.post("/customers")
def import_customers_csv(
    file: UploadFile = File(...),
    business_id: str = Form(..., alias="businessId"),
    send_welcome: bool = Form(default=True, alias="sendWelcome"),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    business = load_business(db, business_id=business_id)

    if not _is_csv(file):
        raise ValidationError("CSV file is required", code="InvalidFile")

    content = file.file.read()
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = content.decode("latin-1")
    rows = parse_csv_text(text)

    run = ImportRun(
        business_id=business.id,
        filename=file.filename,
        status="QUEUED",
        progress=0,
        total_rows=len(rows),
        send_welcome=send_welcome,
    )
    db.add(run)
    db.commit()
    db.refresh(run)

    logger.info(
        "customer import received",
        extra={"import_run_id": str(run.id), "business_id": str(business.id), "total_rows": len(rows)},
    )

    if not rows:
        fail_run(db, run, "CSV file is empty or contains no data rows")
        raise ValidationError("CSV file is empty", code="EmptyFile", importId=str(run.id))

    if len(rows) > MAX_IMPORT_ROWS:
        fail_run(db, run, f"File has {len(rows)} rows; the maximum is {MAX_IMPORT_ROWS}")
        raise RowCeilingExceeded(
            f"Too many rows. Maximum {MAX_IMPORT_ROWS} rows allowed.",
            importId=str(run.id),
            totalRows=len(rows),
            maxRows=MAX_IMPORT_ROWS,
        )

    if len(rows) > ASYNC_IMPORT_THRESHOLD:
        run.rows = rows
        db.commit()
        return {
            "importId": str(run.id),
            "async": True,
            "status": run.status,
            "totalRows": len(rows),
            "message": f"Processing {len(rows)} rows in background.",
        }

    try:
        result = run_import(db, run, business, rows, dispatcher=dispatcher)
    except OperationalError as e:
        db.rollback()
        db.refresh(run)
        fail_run(db, run, f"Store unavailable: {e}")
        raise TransientStoreError("Store temporarily unavailable, please retry", importId=str(run.id)) from e

    return {
        "importId": str(run.id),
        "async": False,
        "status": run.status,
        "results": result.as_dict(),
    }


@router.get("", response_model=list[ImportRunOut])
def list_imports(
    business_id: UUID = Query(..., alias="businessId"),
    limit: int = 50,
    db: Session = Depends(get_db),
):
    return (
        db.query(ImportRun)
        .filter(ImportRun.business_id == business_id)
        .order_by(ImportRun.created_at.desc())
        .limit(limit)
        .all()
    )


@router.get("/{import_id}", response_model=ImportRunOut)
def get_import(import_id: UUID, db: Session = Depends(get_db)):
    run = db.query(ImportRun).filter(ImportRun.id == import_id).first()
    if not run:
        raise NotFound("Import not found", code="ImportNotFound")
    return run
