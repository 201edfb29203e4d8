import logging
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import (
    AuthService,
    InvalidCredentials,
    LoginRequired,
    UsernameTaken,
    delete_session_cookie,
    get_current_user,
    require_user,
    set_session_cookie,
)
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import parse_amount
from database import get_db
from models import Category, Expense, User
from scheduler import SchedulerManager
from schemas import (
    ApiCategoryIn,
    ApiExpenseIn,
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseUpdate,
    RegisterIn,
    parse_datetime,
)
from services import (
    CategoryHasExpenses,
    CategoryNotFound,
    CategoryService,
    CSVService,
    ExpenseNotFound,
    ExpenseService,
)

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

app = FastAPI(title="Expense Tracker")
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")


def format_currency(cents: float) -> str:
    return f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")


templates.env.filters["currency"] = format_currency
templates.env.globals["csrf_token"] = generate_csrf_token


def static_path(path: str) -> str:
    return app.url_path_for("static", path=path)


templates.env.globals["static_path"] = static_path

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LoginRequired)
async def login_required_handler(request: Request, exc: LoginRequired):
    return RedirectResponse(url="/login", status_code=302)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"storage_error: path={request.url.path}")
    if request.url.path.startswith("/api/"):
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    return Response("Internal server error", status_code=500)


def error_message(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        errors = exc.errors()
        if any(err["type"] == "missing" for err in errors):
            return "Missing required fields"
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        message = str(first.get("msg", "Invalid input")).removeprefix("Value error, ")
        return f"{field}: {message}" if field else message
    return str(exc)


def render(
    request: Request, template: str, context: dict[str, object], status_code: int = 200
) -> HTMLResponse:
    return templates.TemplateResponse(
        request, template, context, status_code=status_code
    )


async def checked_form(request: Request, user: Optional[User] = None):
    form = await request.form()
    token = str(form.get("csrf_token") or "")
    if not validate_csrf_token(token, user.id if user else None):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    return form


def form_done(request: Request, url: str, trigger: str) -> Response:
    headers = {"HX-Trigger": trigger}
    if request.headers.get("HX-Request"):
        return Response(status_code=204, headers=headers)
    return RedirectResponse(url=url, status_code=303, headers=headers)


def _field(form, key: str) -> str:
    return str(form.get(key) or "").strip()


def expense_payload_from_form(form, key: str = "{}") -> ExpenseIn:
    name = _field(form, key.format("name"))
    amount = _field(form, key.format("amount"))
    date_raw = _field(form, key.format("date"))
    if not name or not amount or not date_raw:
        raise ValueError("Missing required fields")
    return ExpenseIn(
        name=name,
        amount_cents=parse_amount(amount),
        date=parse_datetime(date_raw),
        category_id=_field(form, key.format("category_id")) or None,
    )


def bulk_payload_from_form(form) -> list[ExpenseIn]:
    items: list[ExpenseIn] = []
    index = 0
    while f"expenses[{index}][name]" in form:
        try:
            items.append(expense_payload_from_form(form, f"expenses[{index}][{{}}]"))
        except ValueError as exc:
            raise ValueError(f"Row {index + 1}: {error_message(exc)}") from exc
        index += 1
    if not items:
        raise ValueError("No valid expenses provided")
    return items


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "text_color": category.text_color,
        "description": category.description,
    }


def expense_to_dict(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "name": expense.name,
        "date": expense.date.isoformat(),
        "amount_cents": expense.amount_cents,
        "category_id": expense.category_id,
    }


@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request, user: Optional[User] = Depends(get_current_user)):
    if user:
        return RedirectResponse(url="/", status_code=302)
    return render(request, "login.html", {"error": None})


@app.post("/login")
async def login(request: Request, db: Session = Depends(get_db)):
    form = await checked_form(request)
    service = AuthService(db)
    try:
        user = service.authenticate(
            _field(form, "username"), str(form.get("password") or "")
        )
    except InvalidCredentials as exc:
        return render(request, "login.html", {"error": str(exc)}, status_code=400)
    token = service.create_session(user.id)
    logger.info(f"login: user={user.id}")
    response = RedirectResponse(url="/", status_code=303)
    set_session_cookie(response, token)
    return response


@app.get("/register", response_class=HTMLResponse)
def register_page(request: Request):
    return render(request, "register.html", {"error": None})


@app.post("/register")
async def register(request: Request, db: Session = Depends(get_db)):
    form = await checked_form(request)
    try:
        age_raw = _field(form, "age")
        data = RegisterIn(
            username=_field(form, "username"),
            password=str(form.get("password") or ""),
            age=int(age_raw) if age_raw else None,
        )
    except ValueError as exc:
        return render(
            request, "register.html", {"error": error_message(exc)}, status_code=400
        )
    service = AuthService(db)
    try:
        user = service.register(data)
    except UsernameTaken as exc:
        return render(request, "register.html", {"error": str(exc)}, status_code=400)
    token = service.create_session(user.id)
    response = RedirectResponse(url="/", status_code=303)
    set_session_cookie(response, token)
    return response


@app.post("/logout")
async def logout(
    request: Request,
    user: Optional[User] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_session = getattr(request.state, "session", None)
    if user is None or user_session is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    await checked_form(request, user)
    AuthService(db).invalidate_session(user_session.id)
    logger.info(f"logout: user={user.id}")
    response = RedirectResponse(url="/login", status_code=302)
    delete_session_cookie(response)
    return response


@app.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    expenses = ExpenseService(db, user.id)
    return render(
        request,
        "dashboard.html",
        {
            "user": user,
            "expenses": expenses.list(),
            "summary": expenses.summary(),
            "categories": CategoryService(db, user.id).list_all(),
            "most_frequent_categories": expenses.most_frequent_categories(),
            "biggest_categories": expenses.biggest_categories(),
        },
    )


@app.post("/expenses")
async def create_expense(
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, user)
    try:
        data = expense_payload_from_form(form)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    try:
        ExpenseService(db, user.id).create(data)
    except CategoryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return form_done(request, "/", "expenses-changed")


@app.post("/expenses/bulk")
async def create_multiple_expenses(
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, user)
    try:
        items = bulk_payload_from_form(form)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    try:
        count = ExpenseService(db, user.id).create_many(items)
    except CategoryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    response = form_done(request, "/", "expenses-changed")
    response.headers["X-Created-Count"] = str(count)
    return response


@app.get("/expenses/export.csv")
def export_expenses_endpoint(
    user: User = Depends(require_user), db: Session = Depends(get_db)
):
    csv_text = CSVService(db, user.id).export()
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="expenses.csv"'},
    )


@app.post("/expenses/import")
async def import_expenses(
    request: Request,
    csrf_token: str = Form(...),
    file: UploadFile = File(...),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    if not validate_csrf_token(csrf_token, user.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        content = (await file.read()).decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 CSV") from exc
    try:
        count = CSVService(db, user.id).commit(content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    headers = {"HX-Trigger": "expenses-changed"}
    return Response(status_code=200, content=f"Imported {count} rows.", headers=headers)


@app.post("/expenses/{expense_id}/edit")
async def update_expense(
    expense_id: str,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, user)
    try:
        payload = expense_payload_from_form(form)
        data = ExpenseUpdate(**payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    try:
        ExpenseService(db, user.id).update(expense_id, data)
    except (ExpenseNotFound, CategoryNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    next_url = _field(form, "next") or "/"
    if not next_url.startswith("/") or next_url.startswith("//"):
        next_url = "/"
    return form_done(request, next_url, "expenses-changed")


@app.post("/expenses/{expense_id}/delete")
async def delete_expense(
    expense_id: str,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    await checked_form(request, user)
    try:
        ExpenseService(db, user.id).delete(expense_id)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return form_done(request, "/", "expenses-changed")


@app.get("/categories", response_class=HTMLResponse)
def categories_page(
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return render(
        request,
        "categories.html",
        {"user": user, "categories": CategoryService(db, user.id).list_all()},
    )


@app.post("/categories")
async def create_category(
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, user)
    try:
        data = CategoryIn(
            name=_field(form, "name"),
            color=_field(form, "color") or None,
            text_color=_field(form, "text_color") or None,
            description=_field(form, "description") or None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    CategoryService(db, user.id).create(data)
    return form_done(request, "/categories", "categories-updated")


@app.get("/categories/{category_id}", response_class=HTMLResponse)
def category_page(
    category_id: str,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).find(category_id)
    if not category:
        return RedirectResponse(url="/categories", status_code=302)
    return render(request, "category_edit.html", {"user": user, "category": category})


@app.get("/categories/{category_id}/expenses", response_class=HTMLResponse)
def category_expenses_page(
    category_id: str,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    categories = CategoryService(db, user.id)
    category = categories.find(category_id)
    if not category:
        return RedirectResponse(url="/categories", status_code=302)
    expenses = ExpenseService(db, user.id)
    return render(
        request,
        "category_expenses.html",
        {
            "user": user,
            "category": category,
            "expenses": expenses.list_by_category(category_id),
            "summary": expenses.summary(category_id),
            "categories": categories.list_all(),
        },
    )


@app.post("/categories/{category_id}/edit")
async def update_category(
    category_id: str,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, user)
    name = _field(form, "name")
    color = _field(form, "color")
    text_color = _field(form, "text_color")
    if not name or not color or not text_color:
        raise HTTPException(status_code=400, detail="Missing required fields")
    try:
        data = CategoryUpdate(
            name=name,
            color=color,
            text_color=text_color,
            description=_field(form, "description"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    try:
        CategoryService(db, user.id).update(category_id, data)
    except CategoryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return form_done(request, "/categories", "categories-updated")


@app.post("/categories/{category_id}/delete")
async def delete_category(
    category_id: str,
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    await checked_form(request, user)
    try:
        CategoryService(db, user.id).delete(category_id)
    except CategoryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CategoryHasExpenses as exc:
        raise HTTPException(
            status_code=409, detail={"code": exc.code, "message": str(exc)}
        ) from exc
    return form_done(request, "/categories", "categories-updated")


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


@app.get("/api/categories")
def api_categories(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return [category_to_dict(c) for c in CategoryService(db, user.id).list_all()]


@app.post("/api/categories")
async def api_create_category(
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    payload = await _json_body(request)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    try:
        data = ApiCategoryIn.model_validate(payload)
    except ValidationError as exc:
        message = error_message(exc)
        if message == "Missing required fields" or any(
            err["type"] == "string_too_short" for err in exc.errors()
        ):
            message = "All fields are required"
        return JSONResponse({"error": message}, status_code=400)
    try:
        category = CategoryService(db, user.id).create(
            CategoryIn(
                name=data.name,
                description=data.description.strip(),
                color=data.color,
                text_color=data.text_color,
            )
        )
    except ValueError as exc:
        return JSONResponse({"error": error_message(exc)}, status_code=400)
    except SQLAlchemyError:
        logger.exception("api_create_category_failed")
        return JSONResponse({"error": "Failed to create category"}, status_code=500)
    return JSONResponse({"success": True, "id": category.id}, status_code=201)


@app.get("/api/expenses")
def api_expenses(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return [expense_to_dict(e) for e in ExpenseService(db, user.id).list()]


@app.post("/api/expenses")
async def api_create_expenses(
    request: Request,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    payload = await _json_body(request)
    if isinstance(payload, dict):
        rows = [payload]
    elif isinstance(payload, list) and payload:
        rows = payload
    else:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    items: list[ExpenseIn] = []
    for index, row in enumerate(rows, start=1):
        try:
            if not isinstance(row, dict):
                raise ValueError("Expected an object")
            data = ApiExpenseIn.model_validate(row)
        except ValueError as exc:
            message = error_message(exc)
            if len(rows) > 1:
                message = f"Row {index}: {message}"
            return JSONResponse({"error": message}, status_code=400)
        items.append(
            ExpenseIn(
                name=data.name,
                amount_cents=data.amount_cents,
                date=data.date,
                category_id=data.category_id,
            )
        )

    try:
        count = ExpenseService(db, user.id).create_many(items)
    except CategoryNotFound as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    except SQLAlchemyError:
        logger.exception("api_create_expenses_failed")
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    return JSONResponse({"success": True, "count": count}, status_code=201)


@app.get("/api/summary")
def api_summary(user: User = Depends(require_user), db: Session = Depends(get_db)):
    expenses = ExpenseService(db, user.id)
    return {
        "summary": expenses.summary(),
        "most_frequent_categories": expenses.most_frequent_categories(),
        "biggest_categories": expenses.biggest_categories(),
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
