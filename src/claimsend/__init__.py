"""claimsend - send stablecoins to an email or phone number and pay them out on claim."""

__version__ = "0.1.0"
