"""
Store directory row model for ingestion.
Validates one raw row (header-mapped record) before it is written to the stores table.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StoreRow(BaseModel):
    """
    Validates raw store data from uploaded CSV/XLSX files.
    Field aliases match the column headers of the upload template.
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,  # Auto-strip whitespace
        populate_by_name=True,  # Allow field aliases
        extra="ignore",  # Unknown columns are dropped, not rejected
    )

    # === REQUIRED FIELDS ===
    store_name: str = Field(alias="storeName", min_length=1, max_length=255)

    # === ADDRESS ===
    store_address: Optional[str] = Field(None, alias="storeAddress", max_length=500)
    city_name: Optional[str] = Field(None, alias="cityName", max_length=255)
    region_name: Optional[str] = Field(None, alias="regionName", max_length=255)

    # === CLASSIFICATION ===
    retailer_name: Optional[str] = Field(None, alias="retailerName", max_length=255)
    store_type: Optional[str] = Field(None, alias="storeType", max_length=100)

    # === COORDINATES ===
    store_longitude: Optional[Decimal] = Field(None, alias="storeLongitude", ge=-180, le=180)
    store_latitude: Optional[Decimal] = Field(None, alias="storeLatitude", ge=-90, le=90)

    # === VALIDATORS ===

    @field_validator(
        "store_name",
        "store_address",
        "city_name",
        "region_name",
        "retailer_name",
        "store_type",
        mode="before",
    )
    @classmethod
    def convert_to_string(cls, v):
        """Convert numeric cells to strings; blank cells become None."""
        if v is None:
            return None
        if isinstance(v, float) and v != v:  # NaN from spreadsheet cells
            return None
        v = str(v).strip()
        return v or None

    @field_validator("store_longitude", "store_latitude", mode="before")
    @classmethod
    def clean_coordinate(cls, v):
        """Parse coordinates, rejecting anything that is not a number."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            v = v.strip().replace(",", ".")
            if not v:
                return None
        try:
            value = Decimal(str(v))
        except InvalidOperation:
            raise ValueError(f"not a number: {v!r}")
        if not value.is_finite():
            raise ValueError(f"not a finite number: {v!r}")
        return value

    def to_columns(self) -> Dict[str, Any]:
        """Column values for the stores table."""
        return {
            "store_name": self.store_name,
            "store_address": self.store_address,
            "city_name": self.city_name,
            "region_name": self.region_name,
            "retailer_name": self.retailer_name,
            "store_type": self.store_type,
            "store_longitude": self.store_longitude,
            "store_latitude": self.store_latitude,
        }
