import logging
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, Response, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from authz import Action, allowed, requires_authentication
from book import Book
from borrowing import Borrowing
from circulation import Circulation
from config import settings
from errors import ForbiddenError, LibraryError, NotAuthenticatedError
from library import Library
from member import Member, Role
from sorting import Page, resolve_page_request

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

# Largest value SQLite stores in an INTEGER column
MAX_ID = 2**63 - 1

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error mapping ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# --- Dependencies ---
@lru_cache(maxsize=1)
def get_library() -> Library:
    return Library()


def get_circulation(library: Library = Depends(get_library)) -> Circulation:
    return Circulation(library)


# The authenticating gateway forwards the member id of the caller.
member_header = APIKeyHeader(name="X-Member-Id", auto_error=False)


def get_principal(member_id: Optional[str] = Security(member_header),
                  library: Library = Depends(get_library)) -> Optional[Member]:
    """Resolve the calling member, or None for anonymous requests."""
    if not member_id:
        return None
    try:
        member = library.find_member(int(member_id))
    except (ValueError, OverflowError):
        member = None
    if member is None:
        raise HTTPException(status_code=401, detail="Unknown member")
    return member


def authorize(principal: Optional[Member], action: Action, member_id: Optional[int] = None) -> None:
    if principal is None and requires_authentication(action):
        raise NotAuthenticatedError("Authentication required")
    resource = {"member_id": member_id} if member_id is not None else None
    if not allowed(principal, action, resource):
        logger.warning(f"Member {principal.id} ({principal.role.value}) denied {action.value}")
        raise ForbiddenError("You do not have permission to perform this action")


def paging_params(
    page: int = Query(0, ge=0, le=MAX_ID // settings.max_page_size, description="Zero-based page index"),
    size: Optional[int] = Query(None, ge=1, description="Page size"),
    sort: Optional[List[str]] = Query(None, description="field or field,dir; repeatable"),
    sortBy: Optional[str] = Query(None, description="Sort field overriding the default"),
    sortDir: Optional[str] = Query(None, description="asc | desc (with sortBy)"),
) -> Dict[str, Any]:
    """Raw paging parameters. Handlers resolve them with :func:`resolve_page_request` once authorized."""
    return {"page": page, "size": size, "sort": sort, "sort_by": sortBy, "sort_dir": sortDir}


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str | None = None
    publisher: str | None = None
    published_year: int | None = None
    genre: str | None = None
    total_copies: int
    available_copies: int
    created_at: str | None = None


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str | None = None
    publisher: str | None = None
    published_year: int | None = Field(default=None, ge=-MAX_ID, le=MAX_ID)
    genre: str | None = None
    total_copies: int = Field(default=1, ge=0, le=MAX_ID)
    available_copies: int | None = Field(default=None, ge=0, le=MAX_ID)


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    publisher: str | None = None
    published_year: int | None = Field(default=None, ge=-MAX_ID, le=MAX_ID)
    genre: str | None = None
    total_copies: int | None = Field(default=None, ge=0, le=MAX_ID)


class MemberModel(BaseModel):
    id: int
    name: str
    email: str
    role: Role
    membership_date: str


class MemberCreateModel(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    role: Role = Role.USER


class BorrowRequestModel(BaseModel):
    book_id: int = Field(ge=1, le=MAX_ID)
    member_id: int | None = Field(default=None, ge=1, le=MAX_ID, description="Defaults to the calling member")


class BorrowingModel(BaseModel):
    id: int
    book_id: int
    book_title: str | None = None
    member_id: int
    borrow_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    fine_amount: float | None = None
    fine_paid_at: datetime | None = None
    state: str
    overdue: bool
    accrued_fine: float


class PageModel(BaseModel):
    total: int
    page: int
    size: int
    total_pages: int


class BookPageModel(PageModel):
    items: List[BookModel]


class MemberPageModel(PageModel):
    items: List[MemberModel]


class BorrowingPageModel(PageModel):
    items: List[BorrowingModel]


class BorrowCountModel(BaseModel):
    book_id: int
    title: str
    borrow_count: int


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    total_members: int
    total_borrowings: int
    active_borrowings: int
    overdue_borrowings: int
    outstanding_fines: float


# --- Helpers ---
def _borrowing_payload(borrowing: Borrowing, circulation: Circulation) -> dict:
    now = circulation.now()
    payload = borrowing.to_dict()
    payload["overdue"] = borrowing.is_overdue(now)
    payload["accrued_fine"] = borrowing.accrued_fine(now, circulation.fine_per_day)
    return payload


def _borrowing_page(page: Page, circulation: Circulation) -> dict:
    return page.to_dict(lambda b: _borrowing_payload(b, circulation))


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health endpoint: checks that the database answers."""
    db_ok = True
    try:
        conn = library.connect()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Books ---
@app.get("/api/books", response_model=BookPageModel)
def get_books(paging: Dict[str, Any] = Depends(paging_params), library: Library = Depends(get_library)):
    """Paginated list of books, by title unless another sort is requested."""
    return library.list_books(resolve_page_request("book", **paging)).to_dict()


@app.get("/api/books/search", response_model=BookPageModel,
         responses={204: {"description": "No book matches the keyword"}})
def search_books(keyword: Optional[str] = Query(None, description="Matched against title, author, genre"),
                 paging: Dict[str, Any] = Depends(paging_params),
                 library: Library = Depends(get_library)):
    """Keyword search. Without a keyword every book is listed; no match answers 204."""
    page = library.search_books(keyword, resolve_page_request("book", **paging))
    if page.is_empty:
        return Response(status_code=204)
    return page.to_dict()


@app.get("/api/books/{book_id}", response_model=BookModel)
def get_book(book_id: int = Path(..., ge=1, le=MAX_ID), library: Library = Depends(get_library)):
    return library.get_book(book_id).to_dict()


@app.post("/api/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, principal: Optional[Member] = Depends(get_principal),
             library: Library = Depends(get_library)):
    authorize(principal, Action.BOOK_CREATE)
    book = library.add_book(Book(**payload.model_dump()))
    return book.to_dict()


@app.put("/api/books/{book_id}", response_model=BookModel)
def update_book(update: BookUpdateModel, book_id: int = Path(..., ge=1, le=MAX_ID),
                principal: Optional[Member] = Depends(get_principal), library: Library = Depends(get_library)):
    authorize(principal, Action.BOOK_UPDATE)
    book = library.update_book(book_id, **update.model_dump(exclude_unset=True))
    return book.to_dict()


@app.delete("/api/books/{book_id}", status_code=204)
def delete_book(book_id: int = Path(..., ge=1, le=MAX_ID), principal: Optional[Member] = Depends(get_principal),
                library: Library = Depends(get_library)):
    authorize(principal, Action.BOOK_DELETE)
    library.remove_book(book_id)
    return Response(status_code=204)


# --- Borrowings ---
@app.get("/api/borrowings", response_model=BorrowingPageModel)
def get_borrowings(paging: Dict[str, Any] = Depends(paging_params),
                   principal: Optional[Member] = Depends(get_principal),
                   circulation: Circulation = Depends(get_circulation)):
    authorize(principal, Action.BORROWING_LIST)
    page_request = resolve_page_request("borrowing", **paging)
    return _borrowing_page(circulation.list_borrowings(page_request), circulation)


@app.post("/api/borrowings", response_model=BorrowingModel, status_code=201)
def borrow_book(payload: BorrowRequestModel, principal: Optional[Member] = Depends(get_principal),
                circulation: Circulation = Depends(get_circulation)):
    member_id = payload.member_id
    if member_id is None and principal is not None:
        member_id = principal.id
    authorize(principal, Action.BORROWING_CREATE, member_id=member_id)
    borrowing = circulation.borrow_book(member_id, payload.book_id)
    return _borrowing_payload(borrowing, circulation)


@app.put("/api/borrowings/{borrowing_id}/return", response_model=BorrowingModel)
def return_book(borrowing_id: int = Path(..., ge=1, le=MAX_ID), principal: Optional[Member] = Depends(get_principal),
                circulation: Circulation = Depends(get_circulation)):
    authorize(principal, Action.BORROWING_RETURN)
    return _borrowing_payload(circulation.return_book(borrowing_id), circulation)


@app.put("/api/borrowings/{borrowing_id}/pay", response_model=BorrowingModel)
def pay_fine(borrowing_id: int = Path(..., ge=1, le=MAX_ID), principal: Optional[Member] = Depends(get_principal),
             circulation: Circulation = Depends(get_circulation)):
    authorize(principal, Action.BORROWING_PAY)
    return _borrowing_payload(circulation.pay_fine(borrowing_id), circulation)


@app.get("/api/borrowings/member/{member_id}", response_model=BorrowingPageModel)
def get_member_borrowings(member_id: int = Path(..., ge=1, le=MAX_ID), paging: Dict[str, Any] = Depends(paging_params),
                          principal: Optional[Member] = Depends(get_principal),
                          circulation: Circulation = Depends(get_circulation)):
    authorize(principal, Action.BORROWING_LIST_MEMBER, member_id=member_id)
    page_request = resolve_page_request("borrowing", **paging)
    return _borrowing_page(circulation.borrowings_of_member(member_id, page_request), circulation)


@app.get("/api/borrowings/{borrowing_id}", response_model=BorrowingModel)
def get_borrowing(borrowing_id: int = Path(..., ge=1, le=MAX_ID), principal: Optional[Member] = Depends(get_principal),
                  circulation: Circulation = Depends(get_circulation)):
    authorize(principal, Action.BORROWING_READ)
    return _borrowing_payload(circulation.get_borrowing(borrowing_id), circulation)


# --- Members ---
@app.get("/api/members", response_model=MemberPageModel)
def get_members(paging: Dict[str, Any] = Depends(paging_params),
                principal: Optional[Member] = Depends(get_principal),
                library: Library = Depends(get_library)):
    authorize(principal, Action.MEMBER_LIST)
    return library.list_members(resolve_page_request("member", **paging)).to_dict()


@app.post("/api/members", response_model=MemberModel, status_code=201)
def add_member(payload: MemberCreateModel, principal: Optional[Member] = Depends(get_principal),
               library: Library = Depends(get_library)):
    authorize(principal, Action.MEMBER_CREATE)
    member = library.add_member(Member(name=payload.name, email=payload.email, role=payload.role))
    return member.to_dict()


@app.get("/api/members/{member_id}", response_model=MemberModel)
def get_member(member_id: int = Path(..., ge=1, le=MAX_ID), principal: Optional[Member] = Depends(get_principal),
               library: Library = Depends(get_library)):
    authorize(principal, Action.MEMBER_READ, member_id=member_id)
    return library.get_member(member_id).to_dict()


# --- Analytics ---
@app.get("/api/analytics/most-borrowed", response_model=List[BorrowCountModel])
def most_borrowed(limit: int = Query(10, ge=1, le=100), principal: Optional[Member] = Depends(get_principal),
                  library: Library = Depends(get_library)):
    authorize(principal, Action.ANALYTICS_READ)
    return [row._asdict() for row in library.most_borrowed(limit)]


@app.get("/api/analytics/borrowing-trends", response_model=Dict[str, int])
def borrowing_trends(start_date: date = Query(..., alias="startDate"),
                     end_date: date = Query(..., alias="endDate"),
                     principal: Optional[Member] = Depends(get_principal),
                     library: Library = Depends(get_library)):
    """Borrowings per day between two dates, both inclusive."""
    authorize(principal, Action.ANALYTICS_READ)
    trend = library.borrowing_trend(start_date, end_date)
    return {day.isoformat(): count for day, count in trend.items()}


@app.get("/api/analytics/overview", response_model=StatsModel)
def overview(principal: Optional[Member] = Depends(get_principal),
             circulation: Circulation = Depends(get_circulation)):
    authorize(principal, Action.ANALYTICS_READ)
    return circulation.library.get_statistics(now=circulation.now())
