from __future__ import annotations

import pytest

from ciflow.conditions import compile_condition, only_on
from ciflow.errors import ConfigError


class TestExpressions:
    def test_runner_os_on_linux(self, make_ctx):
        cond = compile_condition("runner.os == 'linux'")
        assert cond(make_ctx(platform="linux"))
        assert not cond(make_ctx(platform="macos"))

    def test_comparison_is_case_insensitive(self, make_ctx):
        assert compile_condition("runner.os == 'Linux'")(make_ctx(platform="linux"))

    def test_workflow_wrapper_is_stripped(self, make_ctx):
        cond = compile_condition("${{ platform != 'windows' }}")
        assert cond.source == "platform != 'windows'"
        assert cond(make_ctx(platform="macos"))

    def test_env_lookup(self, make_ctx):
        cond = compile_condition("env.CI == 'true' && !(env.SKIP_DOCS == '1')")
        assert cond(make_ctx(env={"CI": "true"}))
        assert not cond(make_ctx(env={"CI": "true", "SKIP_DOCS": "1"}))
        assert not cond(make_ctx())

    def test_or_and_precedence(self, make_ctx):
        cond = compile_condition("job == 'docs' || platform == 'linux' && false")
        assert cond(make_ctx(job="docs", platform="macos"))
        assert not cond(make_ctx(job="lints", platform="linux"))

    def test_literals(self, make_ctx):
        assert compile_condition("true")(make_ctx())
        assert not compile_condition("false")(make_ctx())

    def test_callable_passes_through(self, make_ctx):
        cond = compile_condition(lambda ctx: ctx.job == "build")
        assert cond(make_ctx(job="build"))
        assert compile_condition(cond) is cond


class TestOnlyOn:
    def test_platform_filter(self, make_ctx):
        cond = only_on("Linux", "macos")
        assert cond(make_ctx(platform="linux"))
        assert not cond(make_ctx(platform="windows"))


class TestErrors:
    @pytest.mark.parametrize(
        "source",
        ["", "runner.os ==", "(platform == 'linux'", "platform === 'linux'", "github.ref == 'main'", "env. == 'x'"],
    )
    def test_invalid_expressions_raise_config_error(self, source):
        with pytest.raises(ConfigError):
            compile_condition(source)

    def test_non_string_predicate(self):
        with pytest.raises(ConfigError):
            compile_condition(42)
