from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

from jinja2 import Environment, TemplateSyntaxError

from tandem.core.models import BuildOptions, BundleArtifact
from tandem.utils.diagnostics import TemplateError, TemplateMissing

TEMPLATE_NAME = "index.html.j2"
FALLBACK_TEMPLATE = Path(__file__).resolve().parent.parent / "templates" / TEMPLATE_NAME

# Separates the script and stylesheet references in the synthetic bundle entry.
BUNDLE_DELIMITER = "<!-- tandem:styles -->"

HEAD_CLOSE = "</head>"
BODY_CLOSE = "</body>"

# Groups: leading whitespace control, expression, trailing whitespace control.
PLACEHOLDER_PATTERN = re.compile(r"\{\{([-+]?)(.*?)([-+]?)\}\}", re.DOTALL)
OPEN_DELIMITER = "{{"
CLOSE_DELIMITER = "}}"


def split_bundle_markup(markup: Optional[str]) -> BundleArtifact:
    """Split generated bundle HTML into its script and stylesheet fragments."""
    if not markup:
        return BundleArtifact()

    script_html, _, style_html = markup.partition(BUNDLE_DELIMITER)
    return BundleArtifact(
        script_html=script_html.strip() or None,
        style_html=style_html.strip() or None,
    )


def find_template_locals(template_source: str) -> List[str]:
    """Return the distinct placeholder expressions in the template, in order of appearance."""
    seen: List[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(template_source):
        expression = match.group(2).strip()
        if expression and expression not in seen:
            seen.append(expression)
    return seen


def guard_placeholders(template_source: str) -> str:
    """
    Wrap every `{{ expr }}` so it only renders when `expr` is defined.

    Always call this on the original template text. Guarded output still
    contains the placeholder syntax, so guarding it again would nest.

    Raises:
        TemplateError: a placeholder is nested, empty or unbalanced.
    """

    def replace_match(match: re.Match) -> str:
        placeholder = match.group(0)
        expression = match.group(2).strip()
        if OPEN_DELIMITER in expression:
            raise TemplateError(f"Nested placeholder is not supported: {placeholder!r}")
        if not expression:
            raise TemplateError(f"Empty placeholder: {placeholder!r}")
        # "-" strips whitespace outside the placeholder, so it moves onto the guard tags.
        open_tag = "{%-" if match.group(1) == "-" else "{%"
        close_tag = "-%}" if match.group(3) == "-" else "%}"
        return f"{open_tag} if ({expression}) is defined %}}{placeholder}{{% endif {close_tag}"

    leftover = PLACEHOLDER_PATTERN.sub("", template_source)
    if OPEN_DELIMITER in leftover or CLOSE_DELIMITER in leftover:
        raise TemplateError("Unbalanced placeholder delimiters in template.")

    return PLACEHOLDER_PATTERN.sub(replace_match, template_source)


def _insert_before(source: str, marker: str, fragment: Optional[str]) -> str:
    if not fragment:
        return source

    count = source.count(marker)
    if count != 1:
        raise TemplateError(f"Template must contain exactly one {marker} marker (found {count}).")
    return source.replace(marker, f"{fragment}{marker}")


def inject(artifact: BundleArtifact, template_source: str) -> str:
    """
    Embed bundle output into a template and guard its placeholders.

    Styles land right before </head>, scripts right before </body>.
    """
    html = _insert_before(template_source, HEAD_CLOSE, artifact.style_html)
    html = _insert_before(html, BODY_CLOSE, artifact.script_html)
    html = guard_placeholders(html)

    try:
        Environment().parse(html)
    except TemplateSyntaxError as e:
        raise TemplateError(f"Injected template is not valid Jinja (line {e.lineno}): {e.message}")

    return html


def locate_template(options: BuildOptions, views_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Find the HTML template to inject into.

    Tries, in order: the configured template_file, the server's source view
    directory, `src/server/views`, then the template shipped with tandem.
    """
    candidates: List[Path] = []
    if options.template_file:
        template_path = Path(options.template_file)
        if not template_path.is_absolute():
            template_path = options.root_path / template_path
        candidates.append(template_path)

    if views_dir is not None:
        candidates.append(Path(views_dir) / TEMPLATE_NAME)

    candidates.append(options.root_path / "src" / "server" / "views" / TEMPLATE_NAME)

    if options.use_fallback_template:
        candidates.append(FALLBACK_TEMPLATE)

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def inject_template(
    options: BuildOptions,
    artifact: BundleArtifact,
    views_dir: Optional[Path] = None,
) -> Optional[Path]:
    """
    Render the located template with the bundle and write it to `<output>/public/`.

    Returns the written path, or None when nothing could be located and
    injection was skipped.

    Raises:
        TemplateMissing: no template exists and the fallback is disabled.
    """
    template_path = locate_template(options, views_dir)
    if template_path is None:
        if options.use_fallback_template:
            return None
        raise TemplateMissing(
            f"No {TEMPLATE_NAME} template found and the built-in fallback is disabled.",
            path=str(options.root_path),
        )

    template_source = template_path.read_text(encoding="utf-8")
    try:
        html = inject(artifact, template_source)
    except TemplateError as e:
        e.path = str(template_path)
        raise

    public_dir = options.root_path / options.output_dir / "public"
    public_dir.mkdir(parents=True, exist_ok=True)
    output_path = public_dir / template_path.name
    output_path.write_text(html, encoding="utf-8")
    return output_path
