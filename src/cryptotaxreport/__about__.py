__title__ = "CryptoTaxReport"
__version__ = "0.3.0"
