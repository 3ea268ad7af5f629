class FormCalcError(Exception):
    """Base class for errors raised by the computation engine."""


class ReportConfigError(FormCalcError):
    """A report configuration that cannot produce a table.

    This is the only error report execution lets through to the caller;
    everything numeric degrades to 0 instead.
    """

    def __init__(self, message, suggestion=None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def __str__(self):
        if self.suggestion:
            return f"{self.message} ({self.suggestion})"
        return self.message


class CalculationBuildError(FormCalcError):
    """Raised by CalculatedFieldBuilder when a token cannot follow the previous one."""
