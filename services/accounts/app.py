from contextlib import asynccontextmanager
from typing import Any, List

from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from camrent import auth
from camrent.config import get_settings
from camrent.database import Base, engine, get_db
from camrent.dependencies import get_current_user, get_identity, require_admin, require_back_office
from camrent.logging_middleware import add_audit_middleware
from camrent.models import Booking, BookingStatus, Profile, RoleEnum, User, UserRole
from camrent.rate_limit import AUTH_LIMIT, READ_LIMIT, WRITE_LIMIT, apply_rate_limiter, limiter
from camrent.roles import BACK_OFFICE_ROLES, effective_role_rows, is_back_office, resolve_role
from camrent.schemas import (
    CustomerProvisionRequest,
    CustomerSummaryRead,
    Identity,
    MeRead,
    ProfileCreate,
    ProfileRead,
    ProfileUpdate,
    RoleUpdate,
    StaffMemberRead,
    Token,
    UserRead,
    UserRegister,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Accounts Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "accounts")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def _create_account(db: Session, email: str, password: str) -> User:
    email = email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    user = User(email=email, hashed_password=auth.hash_password(password))
    user.roles.append(UserRole(role=RoleEnum.CUSTOMER))
    db.add(user)
    return user


def _ensure_unique_id_number(db: Session, id_number: str, exclude_profile_id: int | None = None) -> None:
    query = db.query(Profile).filter(Profile.id_number == id_number)
    if exclude_profile_id is not None:
        query = query.filter(Profile.id != exclude_profile_id)
    if query.first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ID number already registered")


def _get_profile_or_404(db: Session, user_id: int) -> Profile:
    profile = db.query(Profile).filter(Profile.user_id == user_id).first()
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "accounts"}


@app.post("/auth/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register(request: Request, user_in: UserRegister, db: Session = Depends(get_db)) -> User:
    user = _create_account(db, user_in.email, user_in.password)
    db.commit()
    db.refresh(user)
    return user


@app.post("/auth/login", response_model=Token)
@limiter.limit(AUTH_LIMIT)
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> Token:
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")

    access_token = auth.issue_access_token(user)
    return Token(access_token=access_token)


@app.get("/auth/me", response_model=MeRead)
@limiter.limit(READ_LIMIT)
def me(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MeRead:
    return MeRead(
        user_id=current_user.id,
        email=current_user.email,
        role=resolve_role(db, current_user.id),
        profile=ProfileRead.model_validate(current_user.profile) if current_user.profile else None,
    )


@app.post("/profiles/me", response_model=ProfileRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_my_profile(
    request: Request,
    profile_in: ProfileCreate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> Profile:
    if db.query(Profile).filter(Profile.user_id == identity.user_id).first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Profile already exists")
    _ensure_unique_id_number(db, profile_in.id_number)
    profile = Profile(user_id=identity.user_id, **profile_in.model_dump())
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@app.get("/profiles/{user_id}", response_model=ProfileRead)
@limiter.limit(READ_LIMIT)
def get_profile(
    request: Request,
    user_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> Profile:
    if identity.user_id != user_id and not is_back_office(identity.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return _get_profile_or_404(db, user_id)


@app.put("/profiles/{user_id}", response_model=ProfileRead)
@limiter.limit(WRITE_LIMIT)
def update_profile(
    request: Request,
    user_id: int,
    profile_update: ProfileUpdate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> Profile:
    if identity.user_id != user_id and not is_back_office(identity.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    profile = _get_profile_or_404(db, user_id)

    data = profile_update.model_dump(exclude_unset=True)
    if data.get("id_number"):
        _ensure_unique_id_number(db, data["id_number"], exclude_profile_id=profile.id)
    for key, value in data.items():
        setattr(profile, key, value)
    db.commit()
    db.refresh(profile)
    return profile


@app.post("/functions/create-customer")
@limiter.limit(WRITE_LIMIT)
def provision_customer(
    request: Request,
    payload: dict[str, Any] = Body(...),
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> JSONResponse:
    """Create a login, customer role and profile for a walk-in customer."""

    try:
        body = CustomerProvisionRequest.model_validate(payload)
        if db.query(Profile).filter(Profile.id_number == body.id_number).first():
            raise ValueError("ID number already registered")
        user = _create_account(db, body.email, body.password)
        user.profile = Profile(
            full_name=body.full_name,
            phone_number=body.phone_number,
            id_number=body.id_number,
        )
        db.commit()
    except HTTPException as exc:
        db.rollback()
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": exc.detail})
    except (ValidationError, ValueError, IntegrityError) as exc:
        db.rollback()
        message = exc.errors()[0]["msg"] if isinstance(exc, ValidationError) else str(exc)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})

    db.refresh(user)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "success": True,
            "user": {"id": user.id, "email": user.email, "created_at": user.created_at.isoformat()},
        },
    )


@app.get("/customers", response_model=List[CustomerSummaryRead])
@limiter.limit(READ_LIMIT)
def list_customers(
    request: Request,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> List[CustomerSummaryRead]:
    counted = Booking.status != BookingStatus.CANCELLED
    rows = db.execute(
        select(
            Profile,
            User.email,
            func.count(Booking.id).label("booking_count"),
            func.coalesce(func.sum(Booking.total_cost), 0).label("total_spent"),
        )
        .join(User, User.id == Profile.user_id)
        .outerjoin(Booking, (Booking.customer_id == Profile.user_id) & counted)
        .group_by(Profile.id, User.email)
        .order_by(Profile.created_at.desc())
    ).all()
    return [
        CustomerSummaryRead(
            user_id=profile.user_id,
            email=email,
            full_name=profile.full_name,
            phone_number=profile.phone_number,
            id_number=profile.id_number,
            booking_count=booking_count,
            total_spent=float(total_spent),
            created_at=profile.created_at,
        )
        for profile, email, booking_count, total_spent in rows
    ]


@app.get("/staff", response_model=List[StaffMemberRead])
@limiter.limit(READ_LIMIT)
def list_staff(
    request: Request,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[StaffMemberRead]:
    visible = set(BACK_OFFICE_ROLES)
    if identity.role != RoleEnum.SUPERADMIN:
        visible.discard(RoleEnum.SUPERADMIN)
    role_rows = db.scalars(
        select(UserRole)
        .options(joinedload(UserRole.user).joinedload(User.profile))
        .where(UserRole.role.in_(sorted(BACK_OFFICE_ROLES)))
        .order_by(UserRole.created_at.desc())
    ).all()
    staff = []
    for role_row in effective_role_rows(role_rows):
        if role_row.role not in visible:
            continue
        profile = role_row.user.profile
        staff.append(
            StaffMemberRead(
                user_id=role_row.user_id,
                email=role_row.user.email,
                role=role_row.role,
                full_name=profile.full_name if profile else None,
                phone_number=profile.phone_number if profile else None,
                created_at=role_row.created_at,
            )
        )
    return staff


@app.put("/staff/{user_id}/role", response_model=StaffMemberRead)
@limiter.limit(WRITE_LIMIT)
def update_role(
    request: Request,
    user_id: int,
    role_update: RoleUpdate,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> StaffMemberRead:
    if user_id == identity.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot change your own role")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    current_role = resolve_role(db, user_id)
    touches_superadmin = RoleEnum.SUPERADMIN in (current_role, role_update.role)
    if touches_superadmin and identity.role != RoleEnum.SUPERADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only superadmins can manage superadmins")

    db.query(UserRole).filter(UserRole.user_id == user_id).delete()
    new_row = UserRole(user_id=user_id, role=role_update.role)
    db.add(new_row)
    db.commit()
    db.refresh(new_row)
    return StaffMemberRead(
        user_id=user.id,
        email=user.email,
        role=new_row.role,
        full_name=user.profile.full_name if user.profile else None,
        phone_number=user.profile.phone_number if user.profile else None,
        created_at=new_row.created_at,
    )
