"""
Common exceptions.
"""
PAD_HEADER = '=' * 20


class LineWatchException(Exception):
    """
    All exceptions subclass this. All exceptions can:
        - Write something useful to the log at their own level.
        - Provide a short message for the HTTP envelope.
    """
    def __init__(self, msg=None, lvl='info'):
        super().__init__(msg)
        self.log_level = lvl

    def write_log(self, log, *, context=None):
        """
        Log all relevant information about this failure.

        Args:
            log: The logger to write to.
            context: A dict of extra information, for instance sheet and row.
        """
        log_func = getattr(log, self.log_level)
        name = self.__class__.__name__ + ': ' + str(self)
        header = f'\n{name}\n{PAD_HEADER}\n'
        log_func(header + log_format(context))


class UserException(LineWatchException):
    """
    Exception occurred usually due to a bad request.

    Not unexpected but can indicate a problem.
    """
    status = 400


class InvalidRequest(UserException):
    """ Unable to process the request due to bad or missing parameters. """


class EntityNotFound(UserException):
    """ The requested entity is not present in the sheet. """
    status = 404


class InternalException(LineWatchException):
    """
    An internal exception that went uncaught.

    Indicates a severe problem.
    """
    status = 500

    def __init__(self, msg, lvl='exception'):
        super().__init__(msg, lvl)


class ConfigurationError(InternalException):
    """ A required setting is missing or invalid. Fatal only at startup. """


class MissingConfigFile(ConfigurationError):
    """ Thrown if a config file isn't present where expected. """


class UpstreamError(InternalException):
    """ A read against the upstream sheet failed. """
    def __init__(self, msg, *, sheet_id=None, a1_range=None):
        super().__init__(msg, 'error')
        self.sheet_id = sheet_id
        self.a1_range = a1_range


class TransientUpstreamError(UpstreamError):
    """ A failure the caller may retry, a timeout or a dropped connection. """


class TransientQuotaError(TransientUpstreamError):
    """ The upstream reported its quota was exceeded, the caller may retry. """


class PermanentError(UpstreamError):
    """ The upstream refused the read, retrying will not help. """


class MalformedRowError(InternalException):
    """ A row or group of rows could not be understood by a parser. """
    def __init__(self, reason, *, sheet=None, row_index=None):
        super().__init__(f'{sheet or "?"} row {row_index}: {reason}', 'error')
        self.reason = reason
        self.sheet = sheet
        self.row_index = row_index


class PartialMismatchWarning(InternalException):
    """
    A parent group collected a different number of sub-rows than configured.
    Never raised out of a parser, it is created and logged then parsing continues.
    """
    def __init__(self, parent_key, expected, actual):
        super().__init__(f'{parent_key} expected {expected} sub-rows but got {actual}', 'warning')
        self.parent_key = parent_key
        self.expected = expected
        self.actual = actual


def log_format(context=None):
    """
    Log useful information from the context of a failure.
    """
    if not context:
        return 'No further context.'

    width = max(len(str(key)) for key in context)
    return '\n'.join(f'{str(key).ljust(width)}: {value}' for key, value in sorted(context.items()))
