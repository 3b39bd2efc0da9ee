"""
User Banking API Application Factory

HTTP transport over the ledger service. Every route hands its payload to the
authorization gate, which verifies the bearer token, applies the method
policy and dispatches to the ledger. Service errors are rendered as
``{kind, code, message, details}`` with the kind's status code.
"""

from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from . import __version__
from .authorization import (
    CREATE_ACCOUNT, CREATE_TRANSACTION, CREATE_USER, DELETE_TRANSACTION,
    DELETE_USER, GET_USER, LIST_ACCOUNTS, LIST_TRANSACTIONS, LIST_USERS, LOGIN,
    LOGOUT, RECONCILE_ACCOUNT, UPDATE_TRANSACTION, UPDATE_USER, VALIDATE_TOKEN,
    CallContext
)
from .errors import ServiceError, ValidationFailed
from .ledger import AccountResult, AuthResult, TransactionResult
from .system import UserBankingSystem, get_user_banking_system


security = HTTPBearer(auto_error=False)


# Request schemas

class CreateUserRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class ValidateTokenRequest(BaseModel):
    token: str = ""


class UpdateUserRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    update_mask: Optional[List[str]] = None


class CreateAccountRequest(BaseModel):
    name: str = ""
    bank: str = "ACB"
    balance: str = Field("0", description="Decimal amount as string")


class CreateTransactionRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    transaction_type: str


class UpdateTransactionRequest(BaseModel):
    amount: Optional[str] = Field(None, description="Decimal amount as string")
    update_mask: Optional[List[str]] = None


# Response rendering

def _auth_body(result: AuthResult) -> Dict[str, Any]:
    return {"user": result.user.to_public_dict(), "token": result.token}


def _account_body(result: AccountResult) -> Dict[str, Any]:
    opening = result.opening_transaction
    return {
        "account": result.account.to_public_dict(),
        "opening_transaction": opening.to_public_dict() if opening else None,
    }


def _transaction_body(result: TransactionResult) -> Dict[str, Any]:
    return {
        "transaction": result.transaction.to_public_dict(),
        "balance": str(result.balance),
    }


def call_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_request_timeout: Optional[float] = Header(None),
) -> CallContext:
    """Bearer token and deadline for the current request"""
    if credentials is not None:
        token = credentials.credentials
    else:
        # Blank or malformed headers reach the gate so it can reject them
        token = request.headers.get("authorization")
    return CallContext.with_timeout(token, x_request_timeout)


def create_app(system: Optional[UserBankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or get_user_banking_system()
    gate = system.gate
    ledger = system.ledger

    app = FastAPI(
        title="User Banking API",
        description="Users, bank accounts and balance-consistent transactions",
        version=__version__,
    )
    app.state.system = system

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = {}
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            details[location or "request"] = error.get("msg", "invalid value")
        error = ValidationFailed(details=details)
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "user_banking_api",
            "version": __version__,
        }

    # Users

    @app.post("/users", status_code=status.HTTP_201_CREATED)
    def create_user(request: CreateUserRequest, ctx: CallContext = Depends(call_context)):
        """Sign up a new user"""
        result = gate.invoke(
            CREATE_USER, request.model_dump(),
            lambda p: ledger.create_user(p["email"], p["password"]), ctx
        )
        return _auth_body(result)

    @app.post("/users/login")
    def login(request: LoginRequest, ctx: CallContext = Depends(call_context)):
        result = gate.invoke(
            LOGIN, request.model_dump(),
            lambda p: ledger.login(p["email"], p["password"]), ctx
        )
        return _auth_body(result)

    @app.post("/users/validate")
    def validate_token(request: ValidateTokenRequest, ctx: CallContext = Depends(call_context)):
        user = gate.invoke(
            VALIDATE_TOKEN, request.model_dump(),
            lambda p: ledger.validate_token(p["token"]), ctx
        )
        return {"user": user.to_public_dict()}

    @app.get("/users")
    def list_users(user_id: Optional[int] = None, email: Optional[str] = None,
                   ctx: CallContext = Depends(call_context)):
        """List users, newest first (admins only)"""
        users = gate.invoke(
            LIST_USERS, {"filter_user_id": user_id, "email": email},
            lambda p: ledger.list_users(p["filter_user_id"], p["email"]), ctx
        )
        return {"users": [u.to_public_dict() for u in users]}

    @app.get("/users/{user_id}")
    def get_user(user_id: int, ctx: CallContext = Depends(call_context)):
        user = gate.invoke(
            GET_USER, {"user_id": user_id},
            lambda p: ledger.get_user(p["user_id"]), ctx
        )
        return {"user": user.to_public_dict()}

    @app.patch("/users/{user_id}")
    def update_user(user_id: int, request: UpdateUserRequest,
                    ctx: CallContext = Depends(call_context)):
        payload = {"user_id": user_id, **request.model_dump()}
        user = gate.invoke(
            UPDATE_USER, payload,
            lambda p: ledger.update_user(
                p["user_id"],
                {"email": p["email"], "password": p["password"]},
                p["update_mask"],
            ),
            ctx
        )
        return {"user": user.to_public_dict()}

    @app.delete("/users/{user_id}")
    def delete_user(user_id: int, ctx: CallContext = Depends(call_context)):
        """Delete a user with all of their accounts and transactions"""
        deleted = gate.invoke(
            DELETE_USER, {"user_id": user_id},
            lambda p: ledger.delete_user(p["user_id"]), ctx
        )
        return {"id": deleted}

    @app.post("/users/{user_id}/logout")
    def logout(user_id: int, ctx: CallContext = Depends(call_context)):
        logged_out = gate.invoke(
            LOGOUT, {"user_id": user_id},
            lambda p: ledger.logout(p["user_id"]), ctx
        )
        return {"id": logged_out}

    # Accounts

    @app.post("/users/{user_id}/accounts", status_code=status.HTTP_201_CREATED)
    def create_account(user_id: int, request: CreateAccountRequest,
                       ctx: CallContext = Depends(call_context)):
        payload = {"user_id": user_id, **request.model_dump()}
        result = gate.invoke(
            CREATE_ACCOUNT, payload,
            lambda p: ledger.create_account(p["user_id"], p["name"], p["bank"], p["balance"]),
            ctx
        )
        return _account_body(result)

    @app.get("/users/{user_id}/accounts")
    def list_accounts(user_id: int, account_id: Optional[int] = None,
                      ctx: CallContext = Depends(call_context)):
        accounts = gate.invoke(
            LIST_ACCOUNTS, {"user_id": user_id, "account_id": account_id},
            lambda p: ledger.list_accounts(p["user_id"], p["account_id"]), ctx
        )
        return {"accounts": [a.to_public_dict() for a in accounts]}

    @app.get("/users/{user_id}/accounts/{account_id}/reconcile")
    def reconcile_account(user_id: int, account_id: int,
                          ctx: CallContext = Depends(call_context)):
        """Compare the stored balance with the transaction history"""
        result = gate.invoke(
            RECONCILE_ACCOUNT, {"user_id": user_id, "account_id": account_id},
            lambda p: ledger.reconcile_account(p["user_id"], p["account_id"]), ctx
        )
        return {
            "account_id": result.account_id,
            "stored_balance": str(result.stored_balance),
            "derived_balance": str(result.derived_balance),
            "consistent": result.consistent,
        }

    # Transactions

    @app.post("/users/{user_id}/accounts/{account_id}/transactions",
              status_code=status.HTTP_201_CREATED)
    def create_transaction(user_id: int, account_id: int, request: CreateTransactionRequest,
                           ctx: CallContext = Depends(call_context)):
        payload = {"user_id": user_id, "account_id": account_id, **request.model_dump()}
        result = gate.invoke(
            CREATE_TRANSACTION, payload,
            lambda p: ledger.create_transaction(
                p["user_id"], p["account_id"], p["amount"], p["transaction_type"]
            ),
            ctx
        )
        return _transaction_body(result)

    @app.patch("/users/{user_id}/accounts/{account_id}/transactions/{transaction_id}")
    def update_transaction(user_id: int, account_id: int, transaction_id: int,
                           request: UpdateTransactionRequest,
                           ctx: CallContext = Depends(call_context)):
        payload = {
            "user_id": user_id,
            "account_id": account_id,
            "transaction_id": transaction_id,
            **request.model_dump(),
        }
        result = gate.invoke(
            UPDATE_TRANSACTION, payload,
            lambda p: ledger.update_transaction(
                p["user_id"], p["account_id"], p["transaction_id"],
                p["amount"], p["update_mask"]
            ),
            ctx
        )
        return _transaction_body(result)

    @app.get("/users/{user_id}/transactions")
    def list_transactions(user_id: int, account_id: Optional[int] = None,
                          ctx: CallContext = Depends(call_context)):
        listings = gate.invoke(
            LIST_TRANSACTIONS, {"user_id": user_id, "account_id": account_id},
            lambda p: ledger.list_transactions(p["user_id"], p["account_id"]), ctx
        )
        return {"transactions": [t.to_public_dict() for t in listings]}

    @app.delete("/users/{user_id}/transactions")
    def delete_transactions(user_id: int, account_id: Optional[int] = None,
                            transaction_id: Optional[int] = None,
                            ctx: CallContext = Depends(call_context)):
        """Delete one transaction, all of an account's, or all of the user's"""
        payload = {"user_id": user_id, "account_id": account_id, "transaction_id": transaction_id}
        result = gate.invoke(
            DELETE_TRANSACTION, payload,
            lambda p: ledger.delete_transaction(
                p["user_id"], p["account_id"], p["transaction_id"]
            ),
            ctx
        )
        return {
            "ids": result.ids,
            "balances": {str(k): str(v) for k, v in result.balances.items()},
        }

    return app
