from matrixci_worker import cli

PIPELINE = """\
name: ngrams
channels: [nightly, beta, stable]
allow_failures:
  - channel: nightly
stages:
  - name: build
    run: echo "build on $MATRIXCI_CHANNEL"
  - name: test
    run: test "$MATRIXCI_CHANNEL" != nightly
notifications:
  on_success: never
"""


def _write(tmp_path, text=PIPELINE):
    p = tmp_path / "pipeline.yml"
    p.write_text(text, encoding="utf-8")
    return str(p)


def test_cli_matrix(tmp_path, capsys):
    rc = cli.main(["matrix", _write(tmp_path)])

    assert rc == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ["nightly (allow failure)", "beta", "stable"]


def test_cli_run_exit_status_ignores_allowed_failure(tmp_path, capsys):
    rc = cli.main(
        ["run", _write(tmp_path), "--artifacts", str(tmp_path / "art"), "--db", str(tmp_path / "h.db")]
    )

    assert rc == 0
    out = capsys.readouterr().out
    assert "nightly      allowed_failure" in out
    assert out.strip().endswith("passed")
    assert list((tmp_path / "art").rglob("build.log"))


def test_cli_run_fails_when_required_channel_fails(tmp_path, capsys):
    text = PIPELINE.replace('!= nightly', '!= beta')
    rc = cli.main(["run", _write(tmp_path, text), "--artifacts", str(tmp_path / "art"), "--db", str(tmp_path / "h.db")])

    assert rc == 1
    assert capsys.readouterr().out.strip().endswith("failed")


def test_cli_config_error(tmp_path, capsys):
    rc = cli.main(["run", _write(tmp_path, "channels: []\nstages: []\n")])

    assert rc == cli.EXIT_CONFIG_ERROR
    assert "invalid pipeline document" in capsys.readouterr().err
