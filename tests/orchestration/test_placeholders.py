from Claims_Pipeline.orchestration.placeholders import PlaceholderResolver, resolve, stringify


def test_property_variable_and_prefixed_variable_tokens():
    resolver = PlaceholderResolver()
    variables = {"TicketID": "TCK-1", "amount": 12}
    properties = {"agent.api.url": "http://agents"}
    text = "${appproperties.agent.api.url}/${TicketID}/${processVariable.amount}"
    assert resolver.resolve(text, variables, properties) == "http://agents/TCK-1/12"


def test_missing_property_resolves_empty_and_unset_variable_stays():
    assert resolve("a${appproperties.nope}b", {}, {}) == "ab"
    assert resolve("x/${unknown}/y", {}) == "x/${unknown}/y"


def test_map_index_token():
    variables = {"documentPaths": {"doc1.pdf": "k/doc1.pdf"}, "currentFile": "doc1.pdf"}
    assert resolve("${documentPaths[currentFile]}", variables) == "k/doc1.pdf"
    assert resolve("${documentPaths[doc1.pdf]}", variables) == "k/doc1.pdf"
    assert resolve("${documentPaths[other]}", variables) == ""
    assert resolve("${notAMap[currentFile]}", variables) == "${notAMap[currentFile]}"


def test_single_pass_does_not_rescan_substitutions():
    assert resolve("${a}", {"a": "${b}", "b": "nested"}) == "${b}"


def test_resolve_structure_walks_lists_and_maps():
    resolver = PlaceholderResolver()
    value = {"k": ["${a}", {"n": "${a}-x"}], "n": 3}
    assert resolver.resolve_structure(value, {"a": "1"}) == {"k": ["1", {"n": "1-x"}], "n": 3}


def test_stringify_renders_structures_as_json():
    assert stringify(True) == "true"
    assert stringify({"a": 1}) == '{"a": 1}'
    assert resolve(None, {}) is None
