def normalize_currency(value: str) -> str:
    if not value or len(value) != 3:
        raise ValueError("Currency must be a three-letter ISO 4217 code")
    return value.upper()
