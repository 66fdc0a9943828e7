from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from tandem import WSGIServer

VIEWS = Path(__file__).parent / "views"
PUBLIC = Path(__file__).resolve().parents[2] / "dist" / "public"


def app(environ, start_response):
    env = Environment(loader=FileSystemLoader([str(PUBLIC), str(VIEWS)]))
    page = env.get_template("index.html.j2").render(title="Hello from tandem")
    start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
    return [page.encode("utf-8")]


default = WSGIServer(app, views=[str(VIEWS)])
