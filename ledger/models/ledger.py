"""
Core Data Models for the Paired Ledger

Two document kinds live in the store:
- Category: a balance-holding wallet (cash box, staff member, client, warehouse)
- Transaction leg: one half of a transfer pair, attached to one category

DESIGN DECISION: Balances are Decimal inside the domain.
The store keeps the formatted display string ("1 000 ₸") in the `amount`
field of a category; conversion happens only in from_document / the engines'
write step, never in between.

DESIGN DECISION: A leg is a tagged union, ExpenseLeg | IncomeLeg,
discriminated by `type`. Both legs of a pair carry the same `pair_id`
(persisted as `relatedTransactionId`, the id of the expense leg).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ledger.codec import parse_amount


# Title the legacy warehouse card was recognised by before `kind` existed
LEGACY_WAREHOUSE_TITLE = "Склад"
LEGACY_WAREHOUSE_ROW = 4

DEFAULT_CATEGORY_COLOR = "bg-emerald-500"


# =============================================================================
# ENUMS
# =============================================================================

class CategoryKind(str, Enum):
    """
    Stable classification of a category.

    Replaces matching categories by their display title.
    """
    CASH_BOX = "cash_box"
    STAFF = "staff"
    CLIENT = "client"
    WAREHOUSE = "warehouse"
    OTHER = "other"

    @classmethod
    def infer(cls, data: dict[str, Any]) -> "CategoryKind":
        """
        Read the kind of a category document.

        Documents written before `kind` existed are classified once here;
        the legacy warehouse card is the only one that gets a non-default kind.
        """
        raw = data.get("kind")
        if raw:
            try:
                return cls(raw)
            except ValueError:
                return cls.OTHER

        if (
            _safe_int(data.get("row"), 0) == LEGACY_WAREHOUSE_ROW
            and data.get("title") == LEGACY_WAREHOUSE_TITLE
        ):
            return cls.WAREHOUSE
        return cls.OTHER


class TransactionType(str, Enum):
    """Direction of a leg. Authoritative over the sign of its amount."""
    EXPENSE = "expense"
    INCOME = "income"


def _safe_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _store_number(value: Decimal) -> Union[int, float]:
    """Firestore has no decimal type; whole amounts are stored as ints."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# =============================================================================
# CATEGORY
# =============================================================================

class Category(BaseModel):
    """
    A balance-holding wallet.

    `balance` equals the sum of the amounts of every leg whose
    category_id is this category's id.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    title: str = ""
    balance: Decimal = Field(
        default=Decimal(0),
        description="Current balance (numeric domain value)"
    )

    # Presentation only
    row: int = Field(default=1)
    color: str = Field(default=DEFAULT_CATEGORY_COLOR)
    icon: Optional[str] = None
    is_visible: bool = True

    kind: CategoryKind = CategoryKind.OTHER
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> "Category":
        """Build a Category from its stored document."""
        return cls(
            id=doc_id,
            title=data.get("title") or "",
            balance=parse_amount(data.get("amount", 0)),
            row=_safe_int(data.get("row"), 1),
            color=data.get("color") or DEFAULT_CATEGORY_COLOR,
            icon=data.get("icon"),
            is_visible=data.get("isVisible", True),
            kind=CategoryKind.infer(data),
            updated_at=data.get("updatedAt"),
        )

    def to_document(self, formatted_amount: str) -> dict[str, Any]:
        """
        Full document for seeding a category.

        The caller supplies the formatted balance so the currency glyph
        follows configuration.
        """
        return {
            "title": self.title,
            "amount": formatted_amount,
            "row": self.row,
            "color": self.color,
            "icon": self.icon,
            "isVisible": self.is_visible,
            "kind": self.kind.value,
        }


# =============================================================================
# TRANSACTION LEGS
# =============================================================================

class Attachment(BaseModel):
    """A photo or document attached to a transfer."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    url: str
    type: str = ""
    size: int = Field(default=0, ge=0)
    uploaded_at: Optional[datetime] = Field(default=None, alias="uploadedAt")
    path: str = ""

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TransferFlags(BaseModel):
    """
    Optional classification of a transfer.

    A flag left as None is not written at all.
    """
    is_salary: Optional[bool] = None
    is_cashless: Optional[bool] = None


class _LegBase(BaseModel):
    """Fields shared by both legs of a pair."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    category_id: str = Field(..., alias="categoryId")
    pair_id: Optional[str] = Field(
        default=None,
        alias="relatedTransactionId",
        description="Id of the expense leg of the pair, stored on both legs"
    )
    amount: Decimal = Field(
        ...,
        description="Signed amount added to the owning category's balance"
    )
    from_user: str = Field(default="", alias="fromUser")
    to_user: str = Field(default="", alias="toUser")
    description: str = ""
    date: Optional[datetime] = None

    is_salary: Optional[bool] = Field(default=None, alias="isSalary")
    is_cashless: Optional[bool] = Field(default=None, alias="isCashless")
    waybill_number: Optional[str] = Field(default=None, alias="waybillNumber")
    waybill_data: Optional[dict[str, Any]] = Field(default=None, alias="waybillData")
    photos: list[Attachment] = Field(default_factory=list)

    @property
    def transaction_type(self) -> TransactionType:
        return TransactionType(self.type)  # type: ignore[attr-defined]

    @property
    def link_ids(self) -> list[str]:
        """Values a counterpart's relatedTransactionId may hold."""
        ids = [self.id]
        if self.pair_id and self.pair_id != self.id:
            ids.append(self.pair_id)
        return ids

    def reversal(self) -> Decimal:
        """Balance delta that undoes this leg on its category."""
        if self.transaction_type is TransactionType.EXPENSE:
            return abs(self.amount)
        return -self.amount

    def to_document(self, date: Any = None) -> dict[str, Any]:
        """
        Stored form of the leg.

        `date` overrides the model's date, which is how the engines pass
        the store's server-timestamp sentinel.
        """
        doc: dict[str, Any] = {
            "categoryId": self.category_id,
            "fromUser": self.from_user,
            "toUser": self.to_user,
            "amount": _store_number(self.amount),
            "description": self.description,
            "type": self.type,  # type: ignore[attr-defined]
            "date": date if date is not None else self.date,
            "relatedTransactionId": self.pair_id,
            "photos": [photo.to_document() for photo in self.photos],
        }
        optional = {
            "isSalary": self.is_salary,
            "isCashless": self.is_cashless,
            "waybillNumber": self.waybill_number,
            "waybillData": self.waybill_data,
        }
        doc.update({key: value for key, value in optional.items() if value is not None})
        return doc


class ExpenseLeg(_LegBase):
    """Debit leg: negative amount on the source category."""
    type: Literal["expense"] = "expense"


class IncomeLeg(_LegBase):
    """Credit leg: positive amount on the target category."""
    type: Literal["income"] = "income"


TransactionLeg = Annotated[Union[ExpenseLeg, IncomeLeg], Field(discriminator="type")]

_LEG_ADAPTER: TypeAdapter = TypeAdapter(TransactionLeg)


def leg_from_document(doc_id: str, data: dict[str, Any]) -> Union[ExpenseLeg, IncomeLeg]:
    """
    Build the matching leg model from a stored transaction document.

    Raises:
        pydantic.ValidationError: If the document has no valid `type`
    """
    return _LEG_ADAPTER.validate_python({**data, "id": doc_id})


# =============================================================================
# VALIDATION AND RESULTS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single reason a transfer request was rejected."""

    field: str = Field(..., description="Field with the issue")
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'same_category')"
    )
    message: str = Field(..., description="Human-readable description of the issue")


class TransferReceipt(BaseModel):
    """What a committed transfer wrote."""

    pair_id: str
    expense_id: str
    income_id: str
    source_id: str
    target_id: str
    amount: Decimal
    source_balance: Decimal = Field(..., description="Source balance after the transfer")
    target_balance: Decimal = Field(..., description="Target balance after the transfer")


class DeletionReceipt(BaseModel):
    """What a committed deletion removed and restored."""

    transaction_id: str
    counterpart_id: Optional[str] = None
    deleted_ids: list[str] = Field(default_factory=list)
    balances: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Category id -> balance after the reversal"
    )

    @property
    def counterpart_found(self) -> bool:
        return self.counterpart_id is not None


# =============================================================================
# INVENTORY (read side)
# =============================================================================

class Product(BaseModel):
    """A warehouse stock line, used to value the warehouse category."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    quantity: Decimal = Decimal(0)
    average_purchase_price: Decimal = Field(default=Decimal(0), alias="averagePurchasePrice")
    warehouse: Optional[str] = None

    @property
    def value(self) -> Decimal:
        return self.quantity * self.average_purchase_price

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> "Product":
        return cls(
            id=doc_id,
            name=data.get("name") or "",
            quantity=parse_amount(data.get("quantity") or 0),
            average_purchase_price=parse_amount(data.get("averagePurchasePrice") or 0),
            warehouse=data.get("warehouse"),
        )
