from .money import money_to_decimal, parse_price

__all__ = ["parse_price", "money_to_decimal"]
