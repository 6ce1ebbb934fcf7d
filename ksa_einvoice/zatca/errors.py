"""
KSA E-INVOICE — Engine errors
Every failure in the invoice engine aborts construction of that invoice.
No retries and no partial recovery happen at this level.
"""


class ZatcaError(Exception):
    """Base class for invoice engine failures."""
    def __init__(self, message: str, code: str = "ZATCA_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ConstructionError(ZatcaError):
    """Raised when an invoice can be neither parsed nor built."""
    def __init__(self, message: str, code: str = "CONSTRUCTION_ERROR"):
        super().__init__(message, code)


class ParseError(ConstructionError):
    """Raised when invoice text is not a well-formed UBL Invoice document."""
    def __init__(self, message: str):
        super().__init__(message, code="XML_PARSE_ERROR")


class ArithmeticFormattingError(ZatcaError, ValueError):
    """Raised when an amount cannot be formatted. Never defaults to zero."""
    def __init__(self, message: str):
        super().__init__(message, code="AMOUNT_FORMAT_ERROR")


class DocumentMutationError(ZatcaError):
    """Raised when a path cannot be written in the invoice document."""
    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(message, code="DOCUMENT_MUTATION_ERROR")
