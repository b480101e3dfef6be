import logging
from unittest.mock import MagicMock

import pytest

from netfs_agent.config import Settings
from netfs_agent.errors import FetchFailure
from netfs_agent.intercept import InterceptingFileSystem
from netfs_agent.models import OutputCapture
from netfs_agent.netfs import NetworkFileSystem
from netfs_agent.sandbox import Sandbox, build_network_fs, build_sandbox


def make_fetcher(resources: dict[str, bytes]) -> MagicMock:
    fetcher = MagicMock()

    def fetch(url):
        if url not in resources:
            raise FetchFailure("HTTP 404 Not Found", url=url, status_code=404)
        return resources[url]

    fetcher.fetch.side_effect = fetch
    return fetcher


@pytest.fixture
def fetcher():
    return make_fetcher({"https://icanhazip.com": b"203.0.113.7\n", "https://a/b.txt": b"bee"})


@pytest.fixture(params=["node-tree", "intercept"])
def sandbox(request, fetcher):
    if request.param == "intercept":
        network = InterceptingFileSystem(fetcher)
    else:
        network = NetworkFileSystem(fetcher)
    sandbox = Sandbox(network)
    yield sandbox
    sandbox.dispose()


# ---------------------------------------------------------------------------
# Execution Tests
# ---------------------------------------------------------------------------

def test_print_is_captured(sandbox):
    result = sandbox.execute("print('hello')")
    assert result.success is True
    assert result.stdout == "hello\n"
    assert result.stderr == ""

def test_open_reads_network_resource(sandbox, fetcher):
    code = (
        "with open('/network/icanhazip.com', 'r', encoding='utf-8') as fp:\n"
        "    print(fp.read().strip())\n"
    )
    result = sandbox.execute(code)
    assert result.success is True
    assert result.stdout == "203.0.113.7\n"
    fetcher.fetch.assert_called_once_with("https://icanhazip.com")

def test_missing_network_resource_is_file_not_found(sandbox):
    code = (
        "try:\n"
        "    open('/network/nowhere.invalid')\n"
        "except FileNotFoundError as exc:\n"
        "    print('missing', exc.errno)\n"
    )
    result = sandbox.execute(code)
    assert result.success is True
    assert result.stdout == "missing 2\n"

def test_exceptions_are_captured_not_raised(sandbox):
    result = sandbox.execute("print('before')\nraise RuntimeError('boom')")
    assert result.success is False
    assert result.stdout == "before\n"
    assert "RuntimeError: boom" in result.stderr

def test_syntax_error_is_captured(sandbox):
    result = sandbox.execute("def broken(:\n")
    assert result.success is False
    assert "SyntaxError" in result.stderr

def test_system_exit_codes(sandbox):
    assert sandbox.execute("raise SystemExit(0)").success is True
    failed = sandbox.execute("raise SystemExit(3)")
    assert failed.success is False
    assert "SystemExit: 3" in failed.stderr

def test_capture_is_reset_after_each_execution(sandbox):
    capture = OutputCapture()
    sandbox.execute("import sys\nprint('out')\nprint('err', file=sys.stderr)", capture)
    assert capture.stdout == ""
    assert capture.stderr == ""

    second = sandbox.execute("print('again')", capture)
    assert second.stdout == "again\n"

def test_globals_persist_between_executions(sandbox):
    sandbox.execute("counter = 41")
    assert sandbox.execute("print(counter + 1)").stdout == "42\n"
    sandbox.reset()
    assert sandbox.execute("print(counter)").success is False

# ---------------------------------------------------------------------------
# Filesystem View Tests
# ---------------------------------------------------------------------------

def test_output_directory_is_writable(sandbox):
    result = sandbox.execute("with open('/output/result.txt', 'w') as fh:\n    fh.write('done')")
    assert result.success is True
    assert sandbox.fs.read_file("/output/result.txt") == b"done"

def test_writes_under_mount_fail_inside_sandbox(sandbox, fetcher):
    code = (
        "try:\n"
        "    open('/network/icanhazip.com', 'w')\n"
        "except OSError as exc:\n"
        "    print(exc.errno)\n"
    )
    result = sandbox.execute(code)
    assert result.stdout == "30\n"
    fetcher.fetch.assert_not_called()

def test_os_stat_materializes_network_resource(sandbox, fetcher):
    code = (
        "import os\n"
        "st = os.stat('/network/icanhazip.com')\n"
        "print(st.st_size, os.path.isfile('/network/icanhazip.com'))\n"
    )
    result = sandbox.execute(code)
    assert result.success is True
    assert result.stdout == "12 True\n"
    fetcher.fetch.assert_called_once_with("https://icanhazip.com")

def test_os_path_exists_is_false_for_missing_resource(sandbox):
    result = sandbox.execute("import os.path\nprint(os.path.exists('/network/nowhere.invalid'))")
    assert result.stdout == "False\n"

def test_os_listdir_and_makedirs_use_output_directory(sandbox):
    code = (
        "import os\n"
        "with open('/output/result.txt', 'w') as fh:\n"
        "    fh.write('done')\n"
        "os.makedirs('/output/charts')\n"
        "print(sorted(os.listdir('/output')))\n"
        "with os.scandir('/output') as entries:\n"
        "    print([entry.name for entry in entries if entry.is_file()])\n"
    )
    result = sandbox.execute(code)
    assert result.success is True, result.stderr
    assert result.stdout == "['charts', 'result.txt']\n['result.txt']\n"
    assert sandbox.fs.isdir("/output/charts")

def test_os_listdir_on_network_directory(sandbox):
    code = (
        "import os\n"
        "open('/network/a/b.txt').read()\n"
        "print(os.listdir('/network/a'))\n"
    )
    result = sandbox.execute(code)
    assert result.success is True, result.stderr
    assert result.stdout == "['b.txt']\n"

def test_pathlib_reads_and_writes_through_virtual_filesystem(sandbox, fetcher):
    code = (
        "from pathlib import Path\n"
        "print(Path('/network/icanhazip.com').read_text().strip())\n"
        "(Path('/output') / 'ip.txt').write_text('203.0.113.7')\n"
        "print([p.name for p in Path('/output').iterdir()])\n"
    )
    result = sandbox.execute(code)
    assert result.success is True, result.stderr
    assert result.stdout == "203.0.113.7\n['ip.txt']\n"
    assert sandbox.fs.read_file("/output/ip.txt") == b"203.0.113.7"
    fetcher.fetch.assert_called_once_with("https://icanhazip.com")

def test_io_open_is_the_virtual_open(sandbox):
    result = sandbox.execute("import io\nwith io.open('/output/a.txt', 'w') as fh:\n    fh.write('hi')")
    assert result.success is True, result.stderr
    assert sandbox.fs.read_file("/output/a.txt") == b"hi"

def test_os_walk_lists_virtual_tree(sandbox):
    sandbox.fs.makedirs("/output/charts")
    sandbox.fs.write_file("/output/charts/ip.png", b"png")
    result = sandbox.execute("import os\nfor root, dirs, files in os.walk('/output'):\n    print(root, dirs, files)")
    assert result.stdout == "/output ['charts'] []\n/output/charts [] ['ip.png']\n"

def test_networkfs_module_is_importable(sandbox):
    code = (
        "import networkfs\n"
        "print(networkfs.path_to_url('/network/icanhazip.com'))\n"
        "print(networkfs.is_cached('/network/icanhazip.com'))\n"
    )
    result = sandbox.execute(code)
    assert result.success is True
    assert result.stdout == "https://icanhazip.com\nFalse\n"

def test_regular_imports_still_work(sandbox):
    result = sandbox.execute("import json\nprint(json.dumps({'a': 1}))")
    assert result.stdout == '{"a": 1}\n'

def test_passthrough_mount(fetcher, tmp_path):
    (tmp_path / "input.csv").write_text("a,b\n")
    with Sandbox(NetworkFileSystem(fetcher), passthrough={"/workspace": tmp_path}) as sandbox:
        result = sandbox.execute("print(open('/workspace/input.csv').read().strip())")
    assert result.stdout == "a,b\n"

def test_dispose_shuts_fetcher_down_once(fetcher):
    sandbox = Sandbox(NetworkFileSystem(fetcher))
    sandbox.dispose()
    sandbox.dispose()
    fetcher.shutdown.assert_called_once()

# ---------------------------------------------------------------------------
# Wiring Tests
# ---------------------------------------------------------------------------

def test_build_network_fs_node_tree_uses_registry_when_restricted(fetcher):
    network = build_network_fs(Settings(strategy="node-tree", restricted=True), fetcher)
    assert isinstance(network, NetworkFileSystem)
    assert network.registry == {"current-ip": "https://icanhazip.com/"}

def test_build_network_fs_unrestricted(fetcher):
    network = build_network_fs(Settings(strategy="node-tree", restricted=False), fetcher)
    assert network.registry is None

def test_build_network_fs_intercept(fetcher):
    network = build_network_fs(Settings(strategy="intercept", mount_point="/net"), fetcher)
    assert isinstance(network, InterceptingFileSystem)
    assert network.mount_point == "/net"

def test_build_network_fs_intercept_notes_missing_registry(fetcher, caplog):
    with caplog.at_level(logging.INFO, logger="netfs_agent.sandbox"):
        build_network_fs(Settings(strategy="intercept", restricted=True), fetcher)
    assert "no resource registry" in caplog.text

def test_build_sandbox_mounts_workspace(fetcher, tmp_path):
    sandbox = build_sandbox(Settings(workspace_dir=tmp_path), fetcher)
    try:
        assert "/workspace" in sandbox.fs.mounts
        assert "/network" in sandbox.fs.mounts
    finally:
        sandbox.dispose()
