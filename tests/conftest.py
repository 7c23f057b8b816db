pytest_plugins = [
    "tests.fixtures.mocked_aws",
    "tests.fixtures.storage_fixtures",
    "tests.fixtures.app_fixtures",
]
