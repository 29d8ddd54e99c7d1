from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from library_portal.config import configure_logging, settings
from library_portal.database import NotFoundError
from library_portal.library import Library
from library_portal.models import ROLE_ADMIN, Profile
from library_portal.permissions import PermissionDenied, PermissionStore
from library_portal.repair import load_repair_session, repair_record
from library_portal.services.auth_service import AuthError, AuthService
from library_portal.services.http_client import BackendClient, BackendError, cleanup_backend_client, get_backend_client
from library_portal.views import STATUS_ALL, loan_duration_days, status_label


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Shared clients live for the whole process
    configure_logging()
    app.state.backend = await get_backend_client()
    app.state.auth = AuthService()
    app.state.permissions = PermissionStore()
    try:
        yield
    finally:
        await app.state.auth.close()
        await cleanup_backend_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error mapping ---
def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message})


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    return _error(502, exc.message)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    # Also covers RepairError
    return _error(400, str(exc))


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return _error(401, exc.message)


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied):
    return _error(403, str(exc))


# --- Dependencies ---
def get_client(request: Request) -> BackendClient:
    return request.app.state.backend


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_permissions(request: Request) -> PermissionStore:
    return request.app.state.permissions


def get_library(client: BackendClient = Depends(get_client)) -> Library:
    return Library(client)


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_profile(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    auth: AuthService = Depends(get_auth),
    library: Library = Depends(get_library),
) -> Profile:
    """Resolve the bearer token to the caller's profile."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="请先登录")
    user = await auth.get_user(credentials.credentials)
    profile = await library.get_profile(user.id)
    if profile is None:
        raise HTTPException(status_code=403, detail="用户资料不存在")
    return profile


def require(section: str, action: str):
    """Dependency factory checking the caller's role against the permission matrix."""

    async def dependency(
        profile: Profile = Depends(get_current_profile),
        permissions: PermissionStore = Depends(get_permissions),
    ) -> Profile:
        permissions.require(profile.role, section, action)
        return profile

    return dependency


async def require_admin(profile: Profile = Depends(get_current_profile)) -> Profile:
    if not profile.is_admin:
        raise PermissionDenied("需要管理员权限")
    return profile


# --- Request models ---
class SignUpIn(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)
    username: str = Field(min_length=1, max_length=50)


class LoginIn(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class BookIn(BaseModel):
    title: str = Field(min_length=1)
    isbn: str | None = Field(default=None, description="ISBN-10 or ISBN-13")
    publisher: str | None = None
    publication_date: str | None = None
    description: str | None = None
    cover_image_url: str | None = None
    author_id: int | None = None
    category_id: int | None = None


class BookUpdate(BaseModel):
    title: str | None = None
    isbn: str | None = None
    publisher: str | None = None
    publication_date: str | None = None
    description: str | None = None
    cover_image_url: str | None = None
    author_id: int | None = None
    category_id: int | None = None


class AuthorIn(BaseModel):
    name: str = Field(min_length=1)
    biography: str | None = None


class CategoryIn(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class BorrowIn(BaseModel):
    book_id: int
    user_id: str | None = Field(default=None, description="Defaults to the caller")
    borrow_date: date | None = None
    due_date: date | None = None


class ReturnIn(BaseModel):
    return_date: date | None = None


class RepairIn(BaseModel):
    user_id: str | None = Field(default=None, description="Replacement profile id")


class RoleIn(BaseModel):
    role: str


class PaginatedResponse(BaseModel):
    items: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int


# --- Health ---
@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "app": settings.app_name,
        "version": settings.app_version,
    }


# --- Auth ---
@app.post("/auth/signup", status_code=201)
async def signup(payload: SignUpIn, auth: AuthService = Depends(get_auth)):
    user = await auth.sign_up(payload.email, payload.password, payload.username.strip())
    return {"id": user.id, "email": user.email, "username": user.username}


@app.post("/auth/login")
async def login(payload: LoginIn, auth: AuthService = Depends(get_auth)):
    session = await auth.sign_in(payload.email, payload.password)
    return {
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "token_type": "bearer",
        "user": {"id": session.user.id, "email": session.user.email, "username": session.user.username},
    }


@app.post("/auth/logout", status_code=204)
async def logout(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    auth: AuthService = Depends(get_auth),
):
    if credentials is None:
        raise HTTPException(status_code=401, detail="请先登录")
    await auth.sign_out(credentials.credentials)


@app.get("/auth/me")
async def me(profile: Profile = Depends(get_current_profile)):
    return profile.to_dict()


# --- Books ---
@app.get("/books", response_model=PaginatedResponse)
async def list_books(
    q: Optional[str] = Query(None, description="Title search"),
    status: Optional[str] = Query(None, description="available | borrowed"),
    author_id: Optional[int] = Query(None),
    category_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
    _: Profile = Depends(require("BOOKS", "READ")),
):
    result = await library.list_books(page, page_size, q, status, author_id, category_id)
    return result.to_dict()


@app.get("/books/available")
async def list_available_books(
    library: Library = Depends(get_library),
    _: Profile = Depends(require("BORROW_RECORDS", "CREATE")),
):
    return [book.to_dict() for book in await library.list_available_books()]


@app.get("/books/{book_id}")
async def get_book(book_id: int, library: Library = Depends(get_library), _: Profile = Depends(require("BOOKS", "READ"))):
    return await library.get_book(book_id)


@app.post("/books", status_code=201)
async def create_book(payload: BookIn, library: Library = Depends(get_library), _: Profile = Depends(require("BOOKS", "CREATE"))):
    book = await library.create_book(payload.model_dump())
    return book.to_dict()


@app.put("/books/{book_id}")
async def update_book(
    book_id: int,
    payload: BookUpdate,
    library: Library = Depends(get_library),
    _: Profile = Depends(require("BOOKS", "UPDATE")),
):
    book = await library.update_book(book_id, payload.model_dump(exclude_unset=True))
    return book.to_dict()


@app.delete("/books/{book_id}", status_code=204)
async def delete_book(book_id: int, library: Library = Depends(get_library), _: Profile = Depends(require("BOOKS", "DELETE"))):
    await library.delete_book(book_id)


# --- Authors ---
@app.get("/authors", response_model=PaginatedResponse)
async def list_authors(
    q: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
    _: Profile = Depends(require("AUTHORS", "READ")),
):
    return (await library.list_authors(page, page_size, q)).to_dict()


@app.get("/authors/{author_id}")
async def get_author(author_id: int, library: Library = Depends(get_library), _: Profile = Depends(require("AUTHORS", "READ"))):
    return await library.get_author(author_id)


@app.post("/authors", status_code=201)
async def create_author(payload: AuthorIn, library: Library = Depends(get_library), _: Profile = Depends(require("AUTHORS", "CREATE"))):
    return (await library.create_author(payload.name, payload.biography)).to_dict()


@app.put("/authors/{author_id}")
async def update_author(
    author_id: int,
    payload: AuthorIn,
    library: Library = Depends(get_library),
    _: Profile = Depends(require("AUTHORS", "UPDATE")),
):
    return (await library.update_author(author_id, payload.name, payload.biography)).to_dict()


@app.delete("/authors/{author_id}", status_code=204)
async def delete_author(author_id: int, library: Library = Depends(get_library), _: Profile = Depends(require("AUTHORS", "DELETE"))):
    await library.delete_author(author_id)


# --- Categories ---
@app.get("/categories", response_model=PaginatedResponse)
async def list_categories(
    q: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
    _: Profile = Depends(require("CATEGORIES", "READ")),
):
    return (await library.list_categories(page, page_size, q)).to_dict()


@app.get("/categories/{category_id}")
async def get_category(
    category_id: int, library: Library = Depends(get_library), _: Profile = Depends(require("CATEGORIES", "READ"))
):
    return await library.get_category(category_id)


@app.post("/categories", status_code=201)
async def create_category(
    payload: CategoryIn, library: Library = Depends(get_library), _: Profile = Depends(require("CATEGORIES", "CREATE"))
):
    return (await library.create_category(payload.name, payload.description)).to_dict()


@app.put("/categories/{category_id}")
async def update_category(
    category_id: int,
    payload: CategoryIn,
    library: Library = Depends(get_library),
    _: Profile = Depends(require("CATEGORIES", "UPDATE")),
):
    return (await library.update_category(category_id, payload.name, payload.description)).to_dict()


@app.delete("/categories/{category_id}", status_code=204)
async def delete_category(
    category_id: int, library: Library = Depends(get_library), _: Profile = Depends(require("CATEGORIES", "DELETE"))
):
    await library.delete_category(category_id)


# --- Borrow records ---
def _can_read_all(profile: Profile, permissions: PermissionStore) -> bool:
    return permissions.can(profile.role, "BORROW_RECORDS", "READ_ALL")


def _record_payload(record, today: Optional[date] = None) -> Dict[str, Any]:
    return dict(record.to_dict(), status=status_label(record, today), duration_days=loan_duration_days(record, today))


@app.get("/borrow-records", response_model=PaginatedResponse)
async def list_borrow_records(
    q: str = Query("", description="Matches book title, author name or username"),
    status: str = Query(STATUS_ALL, description="all | active | returned | overdue"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
    profile: Profile = Depends(get_current_profile),
    permissions: PermissionStore = Depends(get_permissions),
):
    if _can_read_all(profile, permissions):
        user_id = None
    else:
        permissions.require(profile.role, "BORROW_RECORDS", "READ_OWN")
        user_id = profile.id
    result = await library.list_borrow_records(q, status, page, page_size, user_id=user_id)
    return result.to_dict(_record_payload)


@app.post("/borrow-records", status_code=201)
async def borrow_book(
    payload: BorrowIn,
    library: Library = Depends(get_library),
    profile: Profile = Depends(require("BORROW_RECORDS", "CREATE")),
    permissions: PermissionStore = Depends(get_permissions),
):
    user_id = payload.user_id if payload.user_id is not None else profile.id
    if user_id.strip() != profile.id.strip() and not _can_read_all(profile, permissions):
        raise PermissionDenied("只能为自己借阅图书")
    record = await library.borrow_book(payload.book_id, user_id, payload.borrow_date, payload.due_date)
    return record.to_dict()


# Registered before /borrow-records/{record_id} so "repair" is not taken as an id
@app.get("/borrow-records/repair")
async def list_repair_candidates(
    client: BackendClient = Depends(get_client),
    _: Profile = Depends(require("BORROW_RECORDS", "UPDATE")),
):
    return (await load_repair_session(client)).to_dict()


@app.post("/borrow-records/repair/{record_id}")
async def repair_borrow_record(
    record_id: str,
    payload: RepairIn,
    client: BackendClient = Depends(get_client),
    _: Profile = Depends(require("BORROW_RECORDS", "UPDATE")),
):
    # Loaded per request, never cached
    session = await load_repair_session(client)
    changed = await repair_record(client, session, record_id, payload.user_id)
    return {"id": record_id, "changed": changed, "summary": session.summary()}


@app.get("/borrow-records/{record_id}")
async def get_borrow_record(
    record_id: str,
    library: Library = Depends(get_library),
    profile: Profile = Depends(get_current_profile),
    permissions: PermissionStore = Depends(get_permissions),
):
    record = await library.get_borrow_record(record_id)
    if not _can_read_all(profile, permissions):
        permissions.require(profile.role, "BORROW_RECORDS", "READ_OWN")
        if record.user.id != profile.id.strip():
            raise PermissionDenied("没有权限查看此借阅记录")
    return _record_payload(record)


@app.post("/borrow-records/{record_id}/return")
async def return_book(
    record_id: str,
    payload: Optional[ReturnIn] = None,
    library: Library = Depends(get_library),
    _: Profile = Depends(require("BORROW_RECORDS", "UPDATE")),
):
    record = await library.return_book(record_id, payload.return_date if payload else None)
    return record.to_dict()


# --- Admin ---
@app.get("/admin/stats")
async def admin_stats(library: Library = Depends(get_library), _: Profile = Depends(require_admin)):
    return await library.get_statistics()


@app.get("/admin/users", response_model=PaginatedResponse)
async def admin_users(
    q: Optional[str] = Query(None, description="Matches username or email"),
    role: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
    _: Profile = Depends(require_admin),
):
    result = await library.list_profiles(page, page_size, q, role)
    return result.to_dict(lambda p: p.to_dict())


@app.get("/admin/users/options")
async def admin_user_options(library: Library = Depends(get_library), _: Profile = Depends(require_admin)):
    return [{"id": p.id, "username": p.username} for p in await library.list_user_options()]


@app.put("/admin/users/{user_id}/role")
async def admin_update_role(
    user_id: str,
    payload: RoleIn,
    library: Library = Depends(get_library),
    profile: Profile = Depends(require_admin),
):
    if user_id == profile.id and payload.role != ROLE_ADMIN:
        raise HTTPException(status_code=400, detail="不能取消自己的管理员身份")
    return (await library.update_role(user_id, payload.role)).to_dict()


@app.get("/admin/logs", response_model=PaginatedResponse)
async def admin_logs(
    action: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    user: Optional[str] = Query(None, description="Matches the user's email"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
    _: Profile = Depends(require_admin),
):
    result = await library.list_logs(page, page_size, action, resource_type, start, end, user)
    return result.to_dict(lambda entry: entry.to_dict())


@app.get("/admin/permissions")
async def admin_permissions(permissions: PermissionStore = Depends(get_permissions), _: Profile = Depends(require_admin)):
    return permissions.matrix


@app.put("/admin/permissions")
async def admin_update_permissions(
    changes: Dict[str, Dict[str, List[str]]],
    permissions: PermissionStore = Depends(get_permissions),
    _: Profile = Depends(require_admin),
):
    return permissions.update(changes)


@app.post("/admin/permissions/reset")
async def admin_reset_permissions(permissions: PermissionStore = Depends(get_permissions), _: Profile = Depends(require_admin)):
    return permissions.reset_to_default()


@app.post("/admin/permissions/{section}/{action}/{role}")
async def admin_toggle_permission(
    section: str,
    action: str,
    role: str,
    permissions: PermissionStore = Depends(get_permissions),
    _: Profile = Depends(require_admin),
):
    roles = permissions.toggle(section, action, role)
    permissions.save()
    return {"section": section, "action": action, "roles": roles}
