from __future__ import annotations

from dataclasses import dataclass


# Ordered alternatives for one UI element: primary id/attribute selector, a structural fallback,
# then a text-content selector. Tried in order until one appears.
SelectorChain = tuple[str, ...]


@dataclass(frozen=True)
class FlypassSelectors:
    """
    The Flypass customer portal is a third-party web app; its markup changes without notice.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Login (enterprise customers sign in with the company NIT)
    username_input: SelectorChain = ('input[name="username"]', "input#username", 'input[type="text"]')
    password_input: SelectorChain = ('input[name="password"]', "input#password", 'input[type="password"]')
    login_submit: SelectorChain = (
        "#btnEnterpriseLoginLogin",
        'button[type="submit"]',
        'button:has-text("sesión")',
    )

    # Optional interstitial shown after login (announcements / update-your-data prompts).
    optional_dialog_dismiss: SelectorChain = ('button:has-text("Cancelar")', 'button:has-text("Cerrar")')

    # Navigation to the consolidated invoice report (opens in a new window on most accounts).
    invoices_menu: SelectorChain = ("#menuFacturas", 'button:has-text("Facturas")', "text=Facturas")
    invoices_query: SelectorChain = (
        'a[href*="facturas"]',
        'a:has-text("Consulta tus facturas")',
        "text=Consulta tus facturas",
    )
    consolidated_report: SelectorChain = (
        "#consolidatedInform",
        '[id*="consolidated" i]',
        "text=Informe consolidado",
    )

    # Report filters
    document_type_select: str = "#docGLTipo"
    document_type_all_value: str = "todos"
    start_date_input: SelectorChain = (
        'input[title="Fecha Inicial"]',
        'input[name*="fechaInicial"]',
        'input[placeholder*="Inicial"]',
    )
    end_date_input: SelectorChain = (
        'input[title="Fecha Final"]',
        'input[name*="fechaFinal"]',
        'input[placeholder*="Final"]',
    )
    date_input_format: str = "%Y-%m-%d"
    search_button: SelectorChain = ('i[title="Buscar"]', '[title="Buscar"]', 'button:has-text("Buscar")')

    # Export
    export_button: SelectorChain = (
        'i[title="Descargar Listado"]',
        '[title="Descargar Listado"]',
        "text=Descargar Listado",
    )
