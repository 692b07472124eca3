import errno
import io

from erofskit.config import (
    Config,
    ErofsError,
    LogLevel,
    get_available_processors,
    trim_for_progressinfo,
)


def _cfg(**kw):
    return Config(stdout=io.StringIO(), stderr=io.StringIO(), **kw)


def test_defaults_follow_source():
    c = _cfg()
    assert c.dbg_lvl == LogLevel.WARN
    assert c.inline_xattr_tolerance == 2
    assert c.uid == -1 and c.gid == -1
    assert c.unix_timestamp == -1
    assert c.stdout_tty is False


def test_fspath_strips_root_and_slashes():
    c = _cfg()
    c.set_fs_root("/src/root")
    assert c.fspath("/src/root/usr/bin") == "usr/bin"
    assert c.fspath("/src/root") == ""
    assert c.fspath("/src/root///a") == "a"


def test_fspath_without_root():
    c = _cfg()
    assert c.fspath("//abs/path") == "abs/path"


def test_message_filtered_by_level():
    c = _cfg(dbg_lvl=LogLevel.WARN)
    c.message(LogLevel.INFO, "hidden")
    c.message(LogLevel.WARN, "shown")
    out = c.stderr.getvalue()
    assert "hidden" not in out
    assert "<W>" in out and "shown" in out


def test_message_tags():
    c = _cfg(dbg_lvl=LogLevel.DBG)
    c.message(LogLevel.ERR, "e")
    c.message(LogLevel.DBG, "d")
    lines = c.stderr.getvalue().splitlines()
    assert lines[0].startswith("<E>") and lines[0].endswith("e")
    assert lines[1].startswith("<D>") and lines[1].endswith("d")


def test_progress_on_tty_then_message_breaks_line():
    c = _cfg(showprogress=True, stdout_tty=True)
    c.update_progress("50%")
    assert c.stdout.getvalue() == "\r\033[K50%"
    c.message(LogLevel.ERR, "boom")
    assert c.stdout.getvalue().endswith("\n")
    assert "boom" in c.stderr.getvalue()


def test_progress_not_tty_prints_lines():
    c = _cfg(showprogress=True, stdout_tty=False)
    c.update_progress("step")
    assert c.stdout.getvalue() == "step\n"


def test_progress_suppressed_when_verbose_or_disabled():
    c = _cfg(showprogress=True, dbg_lvl=LogLevel.INFO)
    c.update_progress("x")
    d = _cfg(showprogress=False)
    d.update_progress("x")
    assert c.stdout.getvalue() == ""
    assert d.stdout.getvalue() == ""


def test_show_only_when_info():
    quiet = _cfg()
    quiet.show()
    assert quiet.stderr.getvalue() == ""
    loud = _cfg(dbg_lvl=LogLevel.INFO, version="1.8")
    loud.show()
    text = loud.stderr.getvalue()
    assert "c_version" in text and "1.8" in text
    assert len(text.splitlines()) == 3


def test_trim_not_tty_keeps_text():
    assert trim_for_progressinfo("abcdefghij", 2, None) == "abcdefghij"


def test_trim_too_narrow():
    assert trim_for_progressinfo("abc", 10, 10) == ""


def test_trim_long_text():
    result = trim_for_progressinfo("abcdefghij", 2, 8)
    assert len(result) == 6
    assert result.startswith("[]")
    assert result.endswith("ghij")


def test_trim_short_text_unchanged():
    assert trim_for_progressinfo("abc", 2, 80) == "abc"


def test_erofs_error_carries_errno():
    err = ErofsError(errno.EINVAL)
    assert err.errno == errno.EINVAL


def test_available_processors_non_negative():
    assert get_available_processors() >= 0