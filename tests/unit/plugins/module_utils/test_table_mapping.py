"""Table mapping resource tests."""
import json

import pytest
from azure.kusto.data.exceptions import KustoClientError

from plugins.module_utils.adx import (
    AdxCommandError,
    AdxValidationError,
    MappingDecodeError,
    TableMappingIdError,
)
from plugins.module_utils.table_mapping import (
    MappingEntry,
    TableMapping,
    TableMappingConfig,
    TableMappingId,
    TableMappingResource,
    create_statement,
    expand_mapping,
    flatten_mapping,
)

from ...kusto_fakes import ENDPOINT

# pylint: disable=redefined-outer-name


def _config(**kwargs):
    values = dict(
        name="events_json",
        database_name="testdb",
        table_name="Events",
        kind="Json",
        mapping=[
            MappingEntry("Timestamp", "$.ts", "datetime", "DateTimeFromUnixSeconds"),
            MappingEntry("Payload", "$.payload", "dynamic"),
        ],
    )
    values.update(kwargs)
    return TableMappingConfig(**values)


def test_expand_omits_empty_transform():
    entries = [MappingEntry("a", "$.a", "string", "")]
    assert expand_mapping(entries) == '{"column":"a","path":"$.a","datatype":"string"}'


def test_expand_keeps_transform():
    entries = [MappingEntry("b", "$.b", "int", "DateTimeFromUnixSeconds")]
    assert (
        expand_mapping(entries)
        == '{"column":"b","path":"$.b","datatype":"int","transform":"DateTimeFromUnixSeconds"}'
    )


def test_empty_mapping():
    assert expand_mapping([]) == ""
    assert flatten_mapping("") == []
    assert flatten_mapping("[]") == []


@pytest.mark.parametrize(
    "entries",
    [
        [MappingEntry("a", "$.a", "string")],
        [
            MappingEntry("b", "$.b", "int", "DateTimeFromUnixSeconds"),
            MappingEntry("a", "$.a", "string"),
            MappingEntry("c", "$['c d']", "dynamic", "SourceLocation"),
        ],
        [MappingEntry('q"uote', "$.back\\slash", "string", "it's")],
    ],
)
def test_flatten_reverses_expand(entries):
    assert flatten_mapping(expand_mapping(entries)) == entries


def test_flatten_server_formats():
    legacy = '[{"column":"a","path":"$.a","datatype":"string","transform":null}]'
    assert flatten_mapping(legacy) == [MappingEntry("a", "$.a", "string", "")]

    nested = json.dumps(
        [
            {
                "Column": "ts",
                "DataType": "datetime",
                "Properties": {"Path": "$.ts", "Transform": "DateTimeFromUnixSeconds"},
            }
        ]
    )
    assert flatten_mapping(nested) == [
        MappingEntry("ts", "$.ts", "datetime", "DateTimeFromUnixSeconds")
    ]


@pytest.mark.parametrize("body", ["[{", '{"column":"a"', "[1, 2]", '"text"'])
def test_flatten_malformed(body):
    with pytest.raises(MappingDecodeError):
        flatten_mapping(body)


def test_id_round_trip():
    mapping_id = TableMappingId(ENDPOINT, "testdb", "Events", "JSON", "events_json")
    formatted = mapping_id.format()
    assert formatted == f"{ENDPOINT}|testdb|Events|json|events_json"

    parsed = TableMappingId.parse(formatted)
    assert parsed == TableMappingId(ENDPOINT, "testdb", "Events", "json", "events_json")


@pytest.mark.parametrize(
    "resource_id",
    ["", "a|b|c|d", "a|b|c|d|e|f", f"{ENDPOINT}||Events|json|events_json"],
)
def test_id_parse_errors(resource_id):
    with pytest.raises(TableMappingIdError):
        TableMappingId.parse(resource_id)


@pytest.mark.parametrize("kind", ["Json", "json", "JSON"])
def test_kind_accepted(kind):
    _config(kind=kind).validate()


@pytest.mark.parametrize("kind", ["Csv", "avro", ""])
def test_kind_rejected_before_command(kind, kusto_client):
    resource = TableMappingResource(kusto_client, ENDPOINT)
    with pytest.raises(AdxValidationError):
        resource.create_or_update(_config(kind=kind))
    assert kusto_client.commands == []


@pytest.mark.parametrize(
    "overrides",
    [
        dict(name=""),
        dict(database_name=""),
        dict(table_name=""),
        dict(mapping=[MappingEntry("", "$.a", "string")]),
        dict(mapping=[MappingEntry("a", "$.a", "")]),
    ],
)
def test_empty_values_rejected(overrides):
    with pytest.raises(AdxValidationError):
        _config(**overrides).validate()


def test_config_from_params():
    config = TableMappingConfig.from_params(
        dict(
            name="m",
            database_name="db",
            table_name="t",
            kind="Json",
            mapping=[dict(column="a", path="$.a", datatype="string", transform=None)],
            state="present",
        )
    )
    assert config.mapping == [MappingEntry("a", "$.a", "string", "")]


def test_create_statement():
    config = _config(mapping=[MappingEntry("a", "$.a", "string")])
    assert (
        create_statement(config)
        == ".create-or-alter table Events ingestion json mapping 'events_json' "
        '\'[{"column":"a","path":"$.a","datatype":"string"}]\''
    )
    assert create_statement(_config(mapping=[])) == (
        ".create-or-alter table Events ingestion json mapping 'events_json' '[]'"
    )


def test_create_statement_keeps_non_ascii():
    config = _config(mapping=[MappingEntry("Événement", "$.é", "string")])
    assert create_statement(config) == (
        ".create-or-alter table Events ingestion json mapping 'events_json' "
        '\'[{"column":"Événement","path":"$.é","datatype":"string"}]\''
    )
    assert flatten_mapping(expand_mapping(config.mapping)) == config.mapping


def test_create_statement_escapes_body():
    config = _config(mapping=[MappingEntry("a", "$['it's']", "string")])
    assert "$[\\'it\\'s\\']" in create_statement(config)


def test_create_or_update_reads_back(kusto_client):
    resource = TableMappingResource(kusto_client, ENDPOINT, timeout="1m")
    config = _config()

    resource_id, state = resource.create_or_update(config)

    assert resource_id == f"{ENDPOINT}|testdb|Events|json|events_json"
    commands = [command for _, command, _ in kusto_client.commands]
    assert commands[0].startswith(".create-or-alter table Events ingestion json")
    assert commands[1] == ".show table Events ingestion json mapping 'events_json'"
    assert all(database == "testdb" for database, _, _ in kusto_client.commands)

    assert state.to_state() == dict(
        name="events_json",
        database_name="testdb",
        table_name="Events",
        kind="Json",
        mapping=[
            dict(
                column="Timestamp",
                path="$.ts",
                datatype="datetime",
                transform="DateTimeFromUnixSeconds",
            ),
            dict(column="Payload", path="$.payload", datatype="dynamic", transform=""),
        ],
        last_updated_on="2023-05-01T12:30:00",
    )


def test_read_not_found(kusto_client):
    resource = TableMappingResource(kusto_client, ENDPOINT)
    assert resource.read(f"{ENDPOINT}|testdb|Events|json|missing") is None


def test_read_malformed_mapping(kusto_client):
    kusto_client.add_mapping("testdb", "Events", "broken", "[{not json")
    resource = TableMappingResource(kusto_client, ENDPOINT)
    with pytest.raises(MappingDecodeError):
        resource.read(f"{ENDPOINT}|testdb|Events|json|broken")


def test_read_bad_id(kusto_client):
    resource = TableMappingResource(kusto_client, ENDPOINT)
    with pytest.raises(TableMappingIdError):
        resource.read("testdb|Events|json|broken")
    assert kusto_client.commands == []


def test_delete(kusto_client):
    kusto_client.add_mapping("testdb", "Events", "events_json", "[]")
    resource = TableMappingResource(kusto_client, ENDPOINT)

    resource.delete(f"{ENDPOINT}|testdb|Events|json|events_json")

    assert kusto_client.mappings == {}
    assert kusto_client.commands[-1][1] == (
        ".drop table Events ingestion json mapping 'events_json'"
    )


def test_delete_missing_fails(kusto_client):
    resource = TableMappingResource(kusto_client, ENDPOINT)
    with pytest.raises(AdxCommandError, match="error deleting Table Mapping 'gone'"):
        resource.delete(f"{ENDPOINT}|testdb|Events|json|gone")


def test_create_failure_has_context(kusto_client):
    kusto_client.fail_with = KustoClientError("connection refused")
    resource = TableMappingResource(kusto_client, ENDPOINT)
    with pytest.raises(AdxCommandError) as err:
        resource.create_or_update(_config())
    message = str(err.value)
    assert "error creating Mapping 'events_json'" in message
    assert "Table 'Events'" in message
    assert "Database 'testdb'" in message
    assert "connection refused" in message
    assert len(kusto_client.commands) == 1


def test_table_mapping_from_row():
    record = TableMapping.from_row(
        dict(
            Name="m",
            Kind="Json",
            Mapping="[]",
            LastUpdatedOn=None,
            Database="db",
            Table="t",
            Extra="ignored",
        )
    )
    assert record == TableMapping("m", "Json", "[]", "", "db", "t")
