from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import or_
from sqlalchemy.orm import Session

from camrent.booking_workflow import ACTIVE_STATUSES
from camrent.config import get_settings
from camrent.database import Base, engine, get_db
from camrent.dependencies import require_back_office
from camrent.logging_middleware import add_audit_middleware
from camrent.models import Booking, BookingItem, InventoryItem
from camrent.rate_limit import READ_LIMIT, WRITE_LIMIT, apply_rate_limiter, limiter
from camrent.schemas import Identity, InventoryItemCreate, InventoryItemRead, InventoryItemUpdate

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Inventory Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "inventory")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def _get_item_or_404(db: Session, item_id: int) -> InventoryItem:
    item = db.get(InventoryItem, item_id)
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Inventory item not found")
    return item


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "inventory"}


@app.get("/inventory", response_model=List[InventoryItemRead])
@limiter.limit(READ_LIMIT)
def list_items(
    request: Request,
    search: Optional[str] = Query(None, description="Matches name or description"),
    category: Optional[str] = None,
    available_only: bool = False,
    db: Session = Depends(get_db),
) -> List[InventoryItem]:
    query = db.query(InventoryItem)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(InventoryItem.name.ilike(pattern), InventoryItem.description.ilike(pattern)))
    if category:
        query = query.filter(InventoryItem.category == category)
    if available_only:
        query = query.filter(InventoryItem.available_quantity > 0)
    return query.order_by(InventoryItem.name).all()


@app.get("/inventory/categories", response_model=List[str])
@limiter.limit(READ_LIMIT)
def list_categories(request: Request, db: Session = Depends(get_db)) -> List[str]:
    rows = db.query(InventoryItem.category).distinct().order_by(InventoryItem.category).all()
    return [category for (category,) in rows]


@app.get("/inventory/{item_id}", response_model=InventoryItemRead)
@limiter.limit(READ_LIMIT)
def get_item(request: Request, item_id: int, db: Session = Depends(get_db)) -> InventoryItem:
    return _get_item_or_404(db, item_id)


@app.post("/inventory", response_model=InventoryItemRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_item(
    request: Request,
    item_in: InventoryItemCreate,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> InventoryItem:
    item = InventoryItem(**item_in.model_dump())
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


@app.put("/inventory/{item_id}", response_model=InventoryItemRead)
@limiter.limit(WRITE_LIMIT)
def update_item(
    request: Request,
    item_id: int,
    item_update: InventoryItemUpdate,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> InventoryItem:
    item = _get_item_or_404(db, item_id)
    data = item_update.model_dump(exclude_unset=True)
    total = data.get("total_quantity", item.total_quantity)
    available = data.get("available_quantity", item.available_quantity)
    if available > total:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="available_quantity cannot exceed total_quantity",
        )

    for field, value in data.items():
        setattr(item, field, value)
    db.commit()
    db.refresh(item)
    return item


@app.delete("/inventory/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(WRITE_LIMIT)
def delete_item(
    request: Request,
    item_id: int,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> None:
    item = _get_item_or_404(db, item_id)
    on_active_booking = (
        db.query(BookingItem.id)
        .join(Booking, Booking.id == BookingItem.booking_id)
        .filter(BookingItem.item_id == item_id, Booking.status.in_(list(ACTIVE_STATUSES)))
        .first()
    )
    if on_active_booking:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Item is on an active booking")
    db.delete(item)
    db.commit()
