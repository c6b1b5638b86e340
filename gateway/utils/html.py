from html import escape

PICO_CSS = "https://cdn.jsdelivr.net/npm/@picocss/pico@1/css/pico.min.css"


def render_page(title: str, body: str) -> str:
    """Wrap pre-escaped body markup in the shared page layout."""
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "  <head>\n"
        '    <meta charset="utf-8">\n'
        f"    <title>{escape(title)}</title>\n"
        f'    <link rel="stylesheet" href="{PICO_CSS}">\n'
        "  </head>\n"
        "  <body>\n"
        f'    <main class="container">\n{body}\n    </main>\n'
        "  </body>\n"
        "</html>\n"
    )


def link(href: str, text: str) -> str:
    return f'<a href="{escape(href, quote=True)}">{escape(text)}</a>'
