"""Tests for template rendering."""
import threading

import pytest

from scaffoldkit.core.errors import MalformedTemplate, PathTraversal, RenderError, UndefinedReference
from scaffoldkit.core.renderer import TemplateRenderer, render, safe_relative_path


@pytest.fixture
def renderer():
    return TemplateRenderer()


class TestRenderContent:
    """Test content rendering."""

    def test_interpolation(self, renderer):
        result = renderer.render("package {{ Name }}\n", {"Name": "main"})
        assert result.content == b"package main\n"
        assert result.requirements == ()

    def test_nested_conditionals_leave_no_holes(self, renderer):
        source = (
            "import (\n"
            "{% if Logger == \"zap\" %}\n"
            "\t\"go.uber.org/zap\"\n"
            "{% if Sugar %}\n"
            "\t\"go.uber.org/zap/zapcore\"\n"
            "{% endif %}\n"
            "{% else %}\n"
            "\t\"log/slog\"\n"
            "{% endif %}\n"
            ")\n"
        )
        zap = renderer.render(source, {"Logger": "zap", "Sugar": True}).content.decode()
        slog = renderer.render(source, {"Logger": "slog", "Sugar": True}).content.decode()

        assert zap == 'import (\n\t"go.uber.org/zap"\n\t"go.uber.org/zap/zapcore"\n)\n'
        assert slog == 'import (\n\t"log/slog"\n)\n'

    def test_iteration(self, renderer):
        source = "{% for f in Features %}\n- {{ f | pascal_case }}\n{% endfor %}\n"
        result = renderer.render(source, {"Features": ("user-orders", "products")})
        assert result.content == b"- UserOrders\n- Products\n"

    def test_blank_output_is_dropped(self, renderer):
        result = renderer.render("{% if Enabled %}\nbody\n{% endif %}\n  \n", {"Enabled": False})
        assert result.dropped
        assert result.content is None

    def test_fragments(self):
        fragments = {
            "header": "<h1>{{ ProjectName }}</h1>\n",
            "macros": "{% macro field(name) %}<input name=\"{{ name }}\">{% endmacro %}",
        }
        renderer = TemplateRenderer(fragments)
        source = '{% include "header" %}{% import "macros" as m %}{{ m.field("email") }}\n'

        result = renderer.render(source, {"ProjectName": "Demo"})

        assert result.content == b'<h1>Demo</h1>\n<input name="email">\n'

    def test_filters(self, renderer):
        source = "{{ N | slugify }} {{ N | snake_case }} {{ N | camel_case }} {{ N | pascal_case }}"
        result = renderer.render(source, {"N": "User Service"})
        assert result.content == b"user-service user_service userService UserService"

    def test_require_records_facts(self, renderer):
        source = '{{ require("github.com/spf13/cobra", "v1.8.0") -}}\npackage cmd\n'
        result = renderer.render(source, {})

        assert result.content == b"package cmd\n"
        assert result.requirements == (("github.com/spf13/cobra", "v1.8.0"),)

    def test_require_in_dropped_file_is_still_recorded(self, renderer):
        result = renderer.render('{{ require("example.com/x", "v1.0.0") }}\n', {})
        assert result.dropped
        assert result.requirements == (("example.com/x", "v1.0.0"),)

    def test_module_level_render(self):
        assert render("{{ A }}", {"A": "x"}).content == b"x"


class TestRenderErrors:
    """Test failure modes."""

    def test_undefined_reference(self, renderer):
        with pytest.raises(UndefinedReference) as exc_info:
            renderer.render("{{ Missing }}", {}, name="main.go.tmpl")
        assert exc_info.value.entry == "main.go.tmpl"

    def test_malformed_template(self, renderer):
        with pytest.raises(MalformedTemplate):
            renderer.render("{% if A %}never closed", {"A": True})

    def test_unknown_fragment(self, renderer):
        with pytest.raises(MalformedTemplate, match="Unknown fragment"):
            renderer.render('{% include "nope" %}', {})

    def test_require_needs_version(self, renderer):
        with pytest.raises(MalformedTemplate):
            renderer.render('{{ require("example.com/x", "") }}', {})

    def test_require_not_allowed_in_paths(self, renderer):
        with pytest.raises(MalformedTemplate):
            renderer.render_path('{{ require("example.com/x", "v1.0.0") }}main.go', {})

    def test_runtime_error_becomes_render_error(self, renderer):
        with pytest.raises(RenderError, match="ZeroDivisionError") as exc_info:
            renderer.render("per={{ 100 // Workers }}\n", {"Workers": 0}, name="run.sh.tmpl")
        assert not isinstance(exc_info.value, UndefinedReference)
        assert exc_info.value.entry == "run.sh.tmpl"

    def test_unsafe_attribute_access_rejected(self, renderer):
        with pytest.raises(MalformedTemplate, match="unsafe"):
            renderer.render("{{ ''.__class__.__mro__[1].__subclasses__() }}", {})

    def test_oversized_output_rejected(self, renderer, monkeypatch):
        monkeypatch.setattr("scaffoldkit.core.renderer.MAX_RENDERED_SIZE", 16)
        with pytest.raises(RenderError, match="byte limit"):
            renderer.render("{{ 'x' * 17 }}", {})
        assert renderer.render("{{ 'x' * 16 }}", {}).content == b"x" * 16

    def test_render_errors_share_a_base(self):
        assert issubclass(UndefinedReference, RenderError)
        assert issubclass(PathTraversal, RenderError)


class TestRenderPath:
    """Test destination path rendering."""

    def test_conditional_path(self, renderer):
        source = '{% if Framework == "stdlib" %}handler.go{% else %}internal/{{ Framework }}/handler.go{% endif %}'
        assert renderer.render_path(source, {"Framework": "stdlib"}) == "handler.go"
        assert renderer.render_path(source, {"Framework": "gin"}) == "internal/gin/handler.go"

    def test_normalizes(self, renderer):
        assert renderer.render_path("./cmd//{{ Name }}/main.go", {"Name": "api"}) == "cmd/api/main.go"

    @pytest.mark.parametrize("value", ["../escape", "a/../../b", "/etc", "C:/x", ""])
    def test_traversal_rejected(self, renderer, value):
        with pytest.raises(PathTraversal):
            renderer.render_path("{{ Name }}", {"Name": value})

    def test_nul_byte_rejected(self):
        with pytest.raises(PathTraversal):
            safe_relative_path("main\x00.go")

    def test_backslashes_normalized(self):
        assert safe_relative_path("cmd\\api\\main.go") == "cmd/api/main.go"


class TestUndeclaredVariables:
    def test_finds_free_names(self, renderer):
        names = renderer.undeclared_variables(
            '{% set x = 1 %}{{ A }}{% for i in Items %}{{ i }}{% endfor %}{{ require("p", "v") }}'
        )
        assert names == {"A", "Items"}

    def test_syntax_error(self, renderer):
        with pytest.raises(MalformedTemplate):
            renderer.undeclared_variables("{{ A ")

    def test_referenced_fragments(self, renderer):
        source = '{% include "header" %}{% import "macros" as m %}{% include Dynamic %}'
        assert renderer.referenced_fragments(source) == {"header", "macros"}


class TestConcurrency:
    def test_parallel_renders_do_not_share_facts(self):
        renderer = TemplateRenderer()
        source = '{{ require(Pkg, "v1.0.0") -}}\n{{ Pkg }}\n'
        results = {}

        def work(i):
            results[i] = renderer.render(source, {"Pkg": f"example.com/p{i}"})

        threads = [threading.Thread(target=work, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for i, result in results.items():
            assert result.requirements == ((f"example.com/p{i}", "v1.0.0"),)
            assert result.content == f"example.com/p{i}\n".encode()
