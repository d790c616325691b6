"""donation-thermometer — Track a published donation sheet against a fundraising goal."""

__version__ = "0.1.0"

AMOUNT_KEYWORDS: list[str] = ["amount", "payment", "donation", "sum", "total"]
NAME_KEYWORDS: list[str] = ["name", "donor", "person", "contributor"]
