"""Dispatcher state machine tests with in-memory collaborators (no database)."""

import pytest

from dbrest.db import QueryError
from dbrest.dispatcher import Dispatcher, DispatcherSettings, RestRequest, normalize_method
from dbrest.errors import ApiError, BadRequestError, ForbiddenError, MethodNotAllowedError, NotFoundError
from dbrest.passwords import PasswordHasher
from dbrest.query_filter import UNBOUNDED_LIMIT
from dbrest.schema import ResourceKind


class FakeCatalog:
    def __init__(self):
        self.kinds = {
            "widgets": ResourceKind.TABLE,
            "users": ResourceKind.TABLE,
            "v_adults": ResourceKind.VIEW,
        }
        self.invalidated = 0

    def resolve(self, name):
        return self.kinds.get(name)

    def columns(self, name):
        return {"id", "name", "age", "status"}

    def invalidate(self):
        self.invalidated += 1


class FakeGate:
    def __init__(self, verdict=True):
        self.verdict = verdict
        self.calls = []

    def allow(self, request, resource, method, is_table, is_view):
        self.calls.append((resource, method, is_table, is_view))
        return self.verdict


class FakeRunner:
    def __init__(self, result=None, error=None):
        self.result = [] if result is None else result
        self.error = error
        self.statements = []

    def __call__(self, statement):
        self.statements.append(statement)
        if self.error is not None:
            raise self.error
        return self.result

    @property
    def last(self):
        return self.statements[-1]


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def dispatcher(catalog, gate, runner):
    return Dispatcher(catalog, gate, runner, hasher=PasswordHasher("salt"))


def test_patch_is_put():
    assert normalize_method("PATCH") == "put"
    assert normalize_method("GET") == "get"


def test_unknown_resource_is_404_before_the_gate(dispatcher, gate):
    with pytest.raises(NotFoundError) as info:
        dispatcher.dispatch(RestRequest("GET", "nope"))
    assert info.value.status == 404
    assert info.value.message == "nope is not a table or view."
    assert gate.calls == []


def test_gate_veto_is_403(catalog, runner):
    gate = FakeGate(verdict=False)
    dispatcher = Dispatcher(catalog, gate, runner)
    with pytest.raises(ForbiddenError):
        dispatcher.dispatch(RestRequest("PATCH", "widgets", "1", body={"name": "x"}))
    assert gate.calls == [("widgets", "put", True, False)]
    assert runner.statements == []


def test_views_are_read_only(dispatcher, gate):
    with pytest.raises(MethodNotAllowedError) as info:
        dispatcher.dispatch(RestRequest("PATCH", "v_adults", "2", body={"name": "x"}))
    assert info.value.status == 405
    assert info.value.message == "put-method not allowed on view v_adults."
    assert gate.calls == [("v_adults", "put", False, True)]


def test_unsupported_method_on_table(dispatcher):
    with pytest.raises(MethodNotAllowedError) as info:
        dispatcher.dispatch(RestRequest("OPTIONS", "widgets"))
    assert info.value.message == "options-method not allowed on table widgets."


def test_read_without_filters_omits_where(dispatcher, runner):
    result = dispatcher.dispatch(RestRequest("GET", "widgets"))
    assert runner.last.sql == "SELECT * FROM widgets"
    assert runner.last.params == []
    assert result.status == 200
    assert result.payload == []


def test_read_with_filters(dispatcher, runner):
    dispatcher.dispatch(RestRequest("GET", "widgets", query_string="age>=18&age<65"))
    assert runner.last.sql == "SELECT * FROM widgets WHERE age >= ? AND age < ?"
    assert runner.last.params == [18, 65]


def test_read_sort_limit_offset(dispatcher, runner):
    dispatcher.dispatch(RestRequest("GET", "widgets", query_string="sort=name,-age&limit=10&offset=20"))
    assert runner.last.sql == "SELECT * FROM widgets ORDER BY name ASC, age DESC LIMIT 10 OFFSET 20"


def test_offset_alone_still_gets_a_limit(dispatcher, runner):
    dispatcher.dispatch(RestRequest("GET", "widgets", query_string="offset=10"))
    assert runner.last.sql == f"SELECT * FROM widgets LIMIT {UNBOUNDED_LIMIT} OFFSET 10"


def test_regex_operator_comes_from_settings(catalog, gate, runner):
    dispatcher = Dispatcher(catalog, gate, runner, settings=DispatcherSettings(regex_operator="~"))
    dispatcher.dispatch(RestRequest("GET", "widgets", query_string="name%E2%89%88%5Eg"))
    assert runner.last.sql == "SELECT * FROM widgets WHERE name ~ ?"
    assert runner.last.params == ["^g"]


def test_read_by_id_replaces_query_filters(catalog, gate):
    runner = FakeRunner(result=[{"id": 5, "name": "x"}])
    dispatcher = Dispatcher(catalog, gate, runner)
    result = dispatcher.dispatch(RestRequest("GET", "widgets", "5", query_string="name=y&age>3"))
    assert runner.last.sql == "SELECT * FROM widgets WHERE id = ?"
    assert runner.last.params == [5]
    assert result.payload == {"id": 5, "name": "x"}
    assert result.status == 200


def test_read_by_missing_id_is_404_with_null(dispatcher):
    result = dispatcher.dispatch(RestRequest("GET", "widgets", "99"))
    assert result.status == 404
    assert result.payload is None


def test_non_numeric_id_falls_back_to_collection(dispatcher, runner):
    result = dispatcher.dispatch(RestRequest("GET", "widgets", "abc", query_string="name=gear"))
    assert runner.last.sql == "SELECT * FROM widgets WHERE name = ?"
    assert runner.last.params == ["gear"]
    assert result.payload == []


def test_create_builds_insert_from_body(dispatcher, runner):
    dispatcher.dispatch(RestRequest("POST", "widgets", body={"name": "cog", "age": 3}))
    assert runner.last.sql == "INSERT INTO widgets (name, age) VALUES (?, ?)"
    assert runner.last.params == ["cog", 3]


@pytest.mark.parametrize(
    "raw_id, body",
    [
        ("5", {"name": "x"}),
        ("abc", {"name": "x"}),
        (None, {"id": 5, "name": "x"}),
        (None, {"id": 0, "name": "x"}),
    ],
)
def test_create_rejects_ids(dispatcher, runner, raw_id, body):
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("POST", "widgets", raw_id, body=body))
    assert runner.statements == []


def test_create_needs_columns(dispatcher):
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("POST", "widgets", body={}))


def test_create_hashes_identity_password(dispatcher, runner):
    dispatcher.dispatch(RestRequest("POST", "users", body={"email": "a@b.c", "password": "secret"}))
    assert runner.last.params == ["a@b.c", PasswordHasher("salt").hash("secret")]


def test_other_tables_keep_password_columns_as_is(dispatcher, runner):
    dispatcher.dispatch(RestRequest("POST", "widgets", body={"name": "x", "password": "plain"}))
    assert runner.last.params == ["x", "plain"]


def test_identity_write_without_salt_is_a_server_error(catalog, gate, runner):
    dispatcher = Dispatcher(catalog, gate, runner)
    with pytest.raises(ApiError) as info:
        dispatcher.dispatch(RestRequest("POST", "users", body={"email": "a", "password": "b"}))
    assert info.value.status == 500


def test_update_builds_set_list_with_id_last(dispatcher, runner):
    dispatcher.dispatch(RestRequest("PUT", "widgets", "5", body={"name": "n", "age": 2}))
    assert runner.last.sql == "UPDATE widgets SET name = ?, age = ? WHERE id = ?"
    assert runner.last.params == ["n", 2, 5]


def test_patch_routes_like_put(dispatcher, runner):
    dispatcher.dispatch(RestRequest("PATCH", "widgets", "5", body={"name": "n"}))
    assert runner.last.sql == "UPDATE widgets SET name = ? WHERE id = ?"
    assert runner.last.params == ["n", 5]


def test_update_requires_path_id(dispatcher):
    with pytest.raises(BadRequestError) as info:
        dispatcher.dispatch(RestRequest("PUT", "widgets", body={"name": "n"}))
    assert "id in the URL" in info.value.message


def test_update_rejects_body_id(dispatcher):
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("PUT", "widgets", "5", body={"id": 6, "name": "n"}))


def test_update_rehashes_only_when_password_present(dispatcher, runner):
    dispatcher.dispatch(RestRequest("PUT", "users", "1", body={"role": "admin"}))
    assert runner.last.params == ["admin", 1]
    dispatcher.dispatch(RestRequest("PUT", "users", "1", body={"password": "new"}))
    assert runner.last.params == [PasswordHasher("salt").hash("new"), 1]


def test_delete(dispatcher, runner):
    dispatcher.dispatch(RestRequest("DELETE", "widgets", "7"))
    assert runner.last.sql == "DELETE FROM widgets WHERE id = ?"
    assert runner.last.params == [7]


def test_delete_requires_path_id(dispatcher):
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("DELETE", "widgets"))
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("DELETE", "widgets", "abc"))


def test_body_must_be_an_object_with_plain_column_names(dispatcher):
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("POST", "widgets", body=["name"]))
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("POST", "widgets", body={"name); DROP TABLE x; --": 1}))


def test_query_error_becomes_400_and_invalidates_schema(catalog, gate):
    runner = FakeRunner(error=QueryError("no such column: nope"))
    dispatcher = Dispatcher(catalog, gate, runner)
    with pytest.raises(BadRequestError) as info:
        dispatcher.dispatch(RestRequest("GET", "widgets", query_string="nope=1"))
    assert info.value.message == "no such column: nope"
    assert catalog.invalidated == 1


def test_strict_columns(catalog, gate, runner):
    dispatcher = Dispatcher(catalog, gate, runner, settings=DispatcherSettings(strict_columns=True))
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("POST", "widgets", body={"colour": "red"}))
    with pytest.raises(BadRequestError):
        dispatcher.dispatch(RestRequest("GET", "widgets", query_string="sort=colour"))
    dispatcher.dispatch(RestRequest("GET", "widgets", query_string="name=x&sort=-age"))
    assert runner.last.sql == "SELECT * FROM widgets WHERE name = ? ORDER BY age DESC"


def test_statements_always_balance_placeholders(dispatcher, runner):
    requests = [
        RestRequest("GET", "widgets", query_string="a=1&|b>2&c≈x&junk"),
        RestRequest("GET", "widgets", "3"),
        RestRequest("POST", "widgets", body={"name": "a", "age": 1}),
        RestRequest("PUT", "widgets", "3", body={"name": "a"}),
        RestRequest("DELETE", "widgets", "3"),
    ]
    for request in requests:
        dispatcher.dispatch(request)
    for statement in runner.statements:
        assert statement.placeholder_count() == len(statement.params)
