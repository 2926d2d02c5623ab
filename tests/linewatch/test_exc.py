"""
Tests for linewatch.exc
"""
import mock

import linewatch.exc


def test_linewatch_exception_str():
    error = linewatch.exc.LineWatchException("An exception happened :(", lvl='info')
    assert str(error) == "An exception happened :("
    assert error.log_level == 'info'


def test_linewatch_exception_write_log():
    error = linewatch.exc.MalformedRowError("Invalid line code 'XX'", sheet='DATA BCSL HTM', row_index=7)

    log = mock.Mock()
    error.write_log(log, context={'sheet': 'DATA BCSL HTM', 'row': 7, 'code': 'XX'})
    expect = """
MalformedRowError: DATA BCSL HTM row 7: Invalid line code 'XX'
====================
code : XX
row  : 7
sheet: DATA BCSL HTM"""
    log.error.assert_called_with(expect)


def test_linewatch_exception_write_log_no_context():
    error = linewatch.exc.InvalidRequest('A line code is required.')

    log = mock.Mock()
    error.write_log(log)
    log.info.assert_called_with("\nInvalidRequest: A line code is required.\n====================\nNo further context.")


def test_status_codes():
    assert linewatch.exc.InvalidRequest('bad').status == 400
    assert linewatch.exc.EntityNotFound('gone').status == 404
    assert linewatch.exc.ConfigurationError('broken').status == 500


def test_internal_exception_level():
    assert linewatch.exc.ConfigurationError('No sheet id').log_level == 'exception'
    assert linewatch.exc.ConfigurationError('No sheet id', 'error').log_level == 'error'
    assert isinstance(linewatch.exc.MissingConfigFile('log.yml'), linewatch.exc.ConfigurationError)


def test_upstream_error_hierarchy():
    error = linewatch.exc.TransientQuotaError('Quota exceeded', sheet_id='sheet', a1_range='A1:B2')

    assert isinstance(error, linewatch.exc.TransientUpstreamError)
    assert isinstance(error, linewatch.exc.UpstreamError)
    assert not isinstance(error, linewatch.exc.PermanentError)
    assert error.sheet_id == 'sheet'
    assert error.a1_range == 'A1:B2'
    assert error.log_level == 'error'


def test_malformed_row_error():
    error = linewatch.exc.MalformedRowError('Duplicate line code KVHB07M01', row_index=4)

    assert str(error) == '? row 4: Duplicate line code KVHB07M01'
    assert error.reason == 'Duplicate line code KVHB07M01'
    assert error.row_index == 4


def test_partial_mismatch_warning():
    error = linewatch.exc.PartialMismatchWarning('KVHB07CD17', 10, 1)

    assert str(error) == 'KVHB07CD17 expected 10 sub-rows but got 1'
    assert error.log_level == 'warning'
    assert (error.expected, error.actual) == (10, 1)


def test_log_format():
    assert linewatch.exc.log_format() == 'No further context.'
    assert linewatch.exc.log_format({'b': 2, 'aaa': 1}) == 'aaa: 1\nb  : 2'
