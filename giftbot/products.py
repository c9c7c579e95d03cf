"""
Product catalog and buyer-facing message templates.

The marker phrases at the bottom are how the reconstructor recognises its
own earlier messages in a conversation history, so every template that
advances a conversation must keep its marker.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from giftbot.utils import normalize_text

ROBLOX_REDEEM_URL = "www.roblox.com/redeem"
STEAM_REDEEM_URL = "https://store.steampowered.com/account/redeemwalletcode?l=latam"

BRAND_FOOTER = """Quedamos a tu disposicion!

*Somos Roblox Argentina*"""

READY_PROMPT = 'Estas listo para recibir tu codigo? Responde *"LISTO"* y te lo enviamos.'


@dataclass(frozen=True)
class Product:
    key: str
    label: str
    keywords: tuple
    redeem_url: str
    instructions: tuple
    final_message: tuple = field(default=())

    def code_message(self, code: str, title: Optional[str] = None) -> str:
        return code_message(code, title or f"Gift Card {self.label}", self.redeem_url)


def _roblox_steps(label: str) -> str:
    return f"""*COMO CANJEAR GIFT CARD {label.upper()}?*

1. Ingresa a *{ROBLOX_REDEEM_URL}* (desde un navegador, NO desde la app)
2. Inicia sesion en tu cuenta (si no te pide iniciar sesion es que ya existe una cuenta abierta, *asegurate que sea la tuya*)
3. Ingresa el codigo
4. Ya tenes tus Robux!"""


_STEAM_STEPS = f"""*COMO CANJEAR GIFT CARD STEAM?*

1. Ingresa a *{STEAM_REDEEM_URL}*
2. Inicia sesion en tu cuenta
3. Ingresa el codigo de la tarjeta
4. Disfruta tu saldo!"""

_ROBLOX_FINAL = (
    """*Ya tenes tu Gift Card Digital Roblox!* Que la disfrutes!

Te pedimos que en cuanto recibas la tarjeta, *confirmes en ML* para que podamos seguir trabajando!""",
    BRAND_FOOTER,
)

_STEAM_FINAL = (
    """*Ya tenes tu Gift Card Steam!* Que la disfrutes!

Te pedimos que en cuanto recibas la tarjeta, *confirmes en ML* para que podamos seguir trabajando!""",
    BRAND_FOOTER,
)

PRODUCTS = (
    Product(
        key="roblox-10",
        label="Roblox 10 USD",
        keywords=("roblox", "10", "usd", "dolar"),
        redeem_url=ROBLOX_REDEEM_URL,
        instructions=(
            """*COMO CANJEAR GIFT CARD ROBLOX 10 USD?*

*Tene presente que es imprescindible recordar usuario y contrasena!*
IMPORTANTE: Esta tarjeta NO acredita Robux de manera directa, sino que acredita 10 USD y con ese saldo se compran los Robux.""",
            f"""*PASO A PASO:*

1. Ingresa a *{ROBLOX_REDEEM_URL}* (desde un navegador, NO desde la app)
2. Inicia sesion en tu cuenta (*asegurate que sea la tuya*)
3. Ingresa el codigo
4. Ya tenes tus 10 USD!""",
            """*UNA VEZ QUE TENES LOS 10 USD CARGADOS:*

5. Anda a: *https://www.roblox.com/premium/membership*
6. Elegi el plan Premium de *USD 9.99*
7. En forma de pago elegi *"Pagar con credito de Roblox"*
8. *NO HAY QUE VOLVER A PONER EL CODIGO*""",
            READY_PROMPT,
        ),
        final_message=_ROBLOX_FINAL,
    ),
    Product(
        key="roblox-400",
        label="Roblox 400 Robux",
        keywords=("roblox", "400", "robux"),
        redeem_url=ROBLOX_REDEEM_URL,
        instructions=(_roblox_steps("400 Robux"), READY_PROMPT),
        final_message=_ROBLOX_FINAL,
    ),
    Product(
        key="roblox-800",
        label="Roblox 800 Robux",
        keywords=("roblox", "800", "robux"),
        redeem_url=ROBLOX_REDEEM_URL,
        instructions=(_roblox_steps("800 Robux"), READY_PROMPT),
        final_message=_ROBLOX_FINAL,
    ),
    Product(
        key="steam-5",
        label="Steam 5 USD",
        keywords=("steam", "5", "usd", "dolar"),
        redeem_url=STEAM_REDEEM_URL,
        instructions=(_STEAM_STEPS, READY_PROMPT),
        final_message=_STEAM_FINAL,
    ),
    Product(
        key="steam-10",
        label="Steam 10 USD",
        keywords=("steam", "10", "usd", "dolar"),
        redeem_url=STEAM_REDEEM_URL,
        instructions=(_STEAM_STEPS, READY_PROMPT),
        final_message=_STEAM_FINAL,
    ),
)

_PRODUCTS_BY_KEY = {product.key: product for product in PRODUCTS}

MIN_PRODUCT_SCORE = 2


def _keyword_hit(text: str, keyword: str) -> bool:
    return re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", text) is not None


def detect_product(title: str) -> Optional[Product]:
    """
    Detect the product from a listing title.

    Each product scores one point per keyword found in the title; the best
    score wins and at least two hits are needed to accept it.
    """
    text = normalize_text(title)
    best: Optional[Product] = None
    best_score = 0
    for product in PRODUCTS:
        score = sum(1 for kw in product.keywords if _keyword_hit(text, kw))
        if score > best_score:
            best, best_score = product, score
    return best if best_score >= MIN_PRODUCT_SCORE else None


def get_product(key: Optional[str]) -> Optional[Product]:
    if not key:
        return None
    return _PRODUCTS_BY_KEY.get(key)


# =============================================================================
# Conversation templates
# =============================================================================

WELCOME_MESSAGE = (
    """Gracias por tu compra en *Roblox Argentina*!

Has adquirido una *GIFT CARD VIRTUAL*
Es 100% digital - No hay envio fisico
El codigo se entrega INSTANTANEAMENTE por este chat""",
)

CANCEL_MESSAGE = """Entendemos tu decision.

*Para cancelar la compra:*
1. Anda a *"Mis Compras"* en Mercado Libre
2. Selecciona esta compra
3. Hace click en *"Cancelar compra"*

Una vez cancelado, Mercado Libre te reintegrara el dinero automaticamente."""

HUMAN_MESSAGE = """*Te conectamos con un asesor humano*

Un vendedor te respondera a la brevedad. Mientras tanto, por favor detallanos tu consulta."""

REMINDER_MESSAGE = """*No entendi tu respuesta*

Responde *"LISTO"* para recibir tu codigo, *"NO"* si queres cancelar la compra o *"HUMANO"* para hablar con una persona."""

DELAY_MESSAGE = "Gracias por tu paciencia! En breve te enviamos tu gift card."

RESEND_LIMIT_MESSAGE = """Para tu seguridad no podemos reenviar mas codigos.

Te derivamos con un asesor humano que te ayudara en breve."""

CHANGE_REFUSED_MESSAGE = (
    "Una vez enviado el codigo no podemos modificar el producto. "
    "Si necesitas ayuda con el canje estoy aca."
)


def code_message(code: str, title: str, redeem_url: str) -> str:
    return f"*{title}*\nTu codigo: *{code}*\n\n*INSTRUCCIONES RAPIDAS:*\n{redeem_url}"


# =============================================================================
# Markers found in our own earlier messages (normalized text)
# =============================================================================

CODE_MARKER = "tu codigo:"
ESCALATION_MARKERS = ("asesor humano", "vendedor te respondera")
CANCEL_MARKER = "para cancelar la compra"
INSTRUCTIONS_MARKERS = ("listo", "lo enviamos")
WELCOME_MARKERS = ("gracias por tu compra", "gift card virtual")

_CODE_PATTERN = re.compile(r"tu c[oó]digo:\s*\**\s*([^\s*]+)", re.IGNORECASE)


def extract_code(text: str) -> Optional[str]:
    """Pull the code out of a code message we sent earlier."""
    match = _CODE_PATTERN.search(text or "")
    return match.group(1) if match else None


# =============================================================================
# FAQ tables
# =============================================================================

@dataclass(frozen=True)
class FaqEntry:
    keywords: tuple
    response: str
    # Listing-title words that make this entry more relevant
    hints: tuple = ()


_SIGN_OFF = "Aguardamos tu compra. Somos Roblox Argentina."

QUESTION_RESPONSES = (
    FaqEntry(
        keywords=("envia", "envio", "como llega", "por mail", "correo electronico"),
        response=f"Gracias por tu consulta. La Gift Card se envia de forma 100% digital a traves del chat de Mercado Libre una vez acreditado el pago. La entrega es instantanea y no se realiza envio fisico. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("cuanto tarda", "tarda", "demora", "entrega", "cuando llega"),
        response=f"Gracias por tu consulta. La entrega es instantanea una vez que Mercado Libre acredita el pago. Recibiras el codigo por el chat oficial de la compra. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("envio gratis", "gratis", "costo de envio"),
        response=f"Gracias por tu consulta. Si, el envio es totalmente gratuito ya que la entrega es digital e instantanea por el chat de Mercado Libre. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("tarjeta fisica", "envio fisico", "domicilio", "fisica"),
        response=f"Gracias por tu consulta. No, esta publicacion corresponde a una Gift Card digital con entrega instantanea. No se envia tarjeta fisica por correo. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("medios de pago", "pagar", "como pago", "efectivo", "transferencia"),
        response=f"Gracias por tu consulta. Aceptamos todos los medios de pago habilitados por Mercado Libre: tarjeta de credito, debito, transferencia y saldo en cuenta. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("cuotas",),
        response=f"Gracias por tu consulta. Si Mercado Libre habilita cuotas con tu tarjeta podras abonar en cuotas sin problema. La entrega es instantanea al acreditarse el pago. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("comprobante", "factura"),
        response=f"Gracias por tu consulta. No es necesario enviar comprobante. Una vez que Mercado Libre acredita el pago, enviamos el codigo de manera instantanea por el chat. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("seguro comprar", "es seguro", "confiable", "estafa"),
        response=f"Gracias por tu consulta. Si, la compra es 100% segura y esta protegida por Mercado Libre. El codigo se envia unicamente por el chat oficial de la plataforma. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("robux", "cuantos robux", "premium"),
        hints=("roblox",),
        response=f"Gracias por tu consulta. La cantidad de Robux es la indicada en el titulo de la publicacion y se acreditan al canjear el codigo en {ROBLOX_REDEEM_URL}. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("region", "argentina", "pais", "saldo", "billetera"),
        hints=("steam",),
        response=f"Gracias por tu consulta. El saldo se acredita en la billetera de tu cuenta Steam al canjear el codigo y sirve para cualquier juego de la tienda. {_SIGN_OFF}",
    ),
    FaqEntry(
        keywords=("stock", "disponible", "hay", "tenes", "tienen"),
        response=f"Gracias por tu consulta. Si, tenemos stock disponible. La entrega es digital e instantanea por el chat de Mercado Libre una vez acreditado el pago. {_SIGN_OFF}",
    ),
)

CHAT_RESPONSES = (
    FaqEntry(
        keywords=("mail", "correo", "email"),
        response="El codigo se envia por este mismo chat, no por mail. Cuando estes listo responde *LISTO* y te lo mandamos.",
    ),
    FaqEntry(
        keywords=("app", "celular", "telefono", "desde el juego"),
        response="El canje hay que hacerlo desde un navegador, no desde la app. Cuando estes listo responde *LISTO* y te lo mandamos.",
    ),
    FaqEntry(
        keywords=("cuanto tarda", "demora", "cuando"),
        response="La entrega es inmediata por este chat. Responde *LISTO* y te enviamos tu codigo.",
    ),
)


def match_faq(text: str, entries: tuple, context: str = "") -> Optional[str]:
    """
    Pick the best FAQ answer for a text.

    Each keyword found in the text is one point; an entry whose hint appears
    in the context (listing title) gets one extra point, and an entry with
    hints that do not match the context is skipped. Ties go to the earlier
    entry. At least one keyword hit is required.
    """
    normalized = normalize_text(text)
    context_text = normalize_text(context)
    best: Optional[FaqEntry] = None
    best_score = 0
    for entry in entries:
        hits = sum(1 for kw in entry.keywords if _keyword_hit(normalized, kw))
        if hits == 0:
            continue
        score = hits
        if entry.hints:
            if not any(_keyword_hit(context_text, hint) for hint in entry.hints):
                continue
            score += 1
        if score > best_score:
            best, best_score = entry, score
    return best.response if best else None


def find_question_response(question: str, item_title: str = "") -> Optional[str]:
    return match_faq(question, QUESTION_RESPONSES, item_title)


def find_chat_response(text: str, product_title: str = "") -> Optional[str]:
    return match_faq(text, CHAT_RESPONSES, product_title)
