"""Known OzNet services and their canonical public URLs."""

from dataclasses import dataclass

from gateway import vars as gateway_vars


@dataclass(frozen=True)
class CatalogEntry:
    label: str
    description: str
    status: str = "active"

    @property
    def domain(self) -> str:
        return public_domain(self.label)

    @property
    def url(self) -> str:
        return public_url(self.label) if self.status == "active" else "#"


def public_domain(label: str) -> str:
    domain = gateway_vars.PUBLIC_DOMAIN
    return f"{label}.{domain}" if domain else label


def public_url(label: str) -> str:
    return f"{gateway_vars.PUBLIC_SCHEME}://{public_domain(label)}"


SERVICE_CATALOG = (
    CatalogEntry("home", "Main project documentation"),
    CatalogEntry("hub", "Service management dashboard"),
    CatalogEntry("files", "Public file server"),
    CatalogEntry("server", "Main server"),
    CatalogEntry("3dprint", "OctoPrint for 3D printer management"),
    CatalogEntry("mail", "Mail server web interface", status="coming-soon"),
    CatalogEntry("wiki", "Kiwix server for offline documentation", status="coming-soon"),
)


def describe(label: str) -> str:
    for entry in SERVICE_CATALOG:
        if entry.label == label:
            return entry.description
    return ""
