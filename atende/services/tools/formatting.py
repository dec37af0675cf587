def format_brl(value: float) -> str:
    """1234.5 -> 'R$ 1.234,50'"""
    text = f"{value:,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def pix_instructions(company, total: float) -> str:
    key_type = f" ({company.pix_key_type})" if company.pix_key_type else ""
    return (
        f"Total: {format_brl(total)}\n"
        f"Chave PIX{key_type}: {company.pix_key}\n"
        "Após o pagamento, envie o comprovante aqui na conversa."
    )
