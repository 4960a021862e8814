"""
Intent detection for the order flow.

Heuristics only — keyword/substring matching across languages. The flow
depends on the ``IntentDetector`` protocol so a tenant-tuned or model-based
detector can replace ``KeywordIntentDetector`` without touching the flow.
"""
import re
import unicodedata
from typing import Iterable, Protocol


class IntentDetector(Protocol):
    def is_purchase_intent(self, text: str) -> bool:
        """Customer message says they want to buy"""

    def reply_offers_order(self, reply: str) -> bool:
        """Generated reply invites the customer to place an order"""

    def is_payment_claim(self, text: str) -> bool:
        """Customer says they paid (without necessarily sending proof)"""

    def is_cash_on_delivery_request(self, text: str) -> bool:
        """Customer asks to pay on delivery"""

    def is_cancellation(self, text: str) -> bool:
        """Customer wants to abandon the order"""


def normalize_text(text: str) -> str:
    """Lowercase, strip accents, collapse whitespace"""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped).strip()


# English / French / Arabic / Hebrew
PURCHASE_KEYWORDS = (
    "i want it", "i'll take it", "i will take it", "i want to buy", "i want to order",
    "buy it", "place an order", "order it", "i'd like to order", "add to cart",
    "je le veux", "je la veux", "je veux acheter", "je veux commander", "je prends",
    "je commande", "passer commande", "je l'achete",
    "بغيتها", "بغيته", "نشري", "اريد شراء", "أريد شراء", "اريد ان اطلب", "أريد أن أطلب", "ابغى اطلب",
    "אני רוצה להזמין", "אני רוצה לקנות", "אני לוקח", "אני לוקחת", "רוצה להזמין",
)

REPLY_ORDER_KEYWORDS = (
    "would you like to order", "shall i place the order", "ready to order",
    "do you want to order", "i can take your order",
    "voulez-vous commander", "souhaitez-vous commander", "je peux prendre votre commande",
    "هل تريد الطلب", "هل تريد أن تطلب",
    "תרצה להזמין", "תרצי להזמין",
)

PAYMENT_CLAIM_KEYWORDS = (
    "i paid", "i have paid", "i've paid", "payment done", "payment sent", "transfer done",
    "i sent the money", "money sent",
    "j'ai paye", "j'ai fait le virement", "virement effectue", "paiement effectue", "c'est paye",
    "خلصت", "دفعت", "حولت", "تم التحويل", "تم الدفع",
    "שילמתי", "העברתי", "ההעברה בוצעה",
)

COD_KEYWORDS = (
    "cash on delivery", "pay on delivery", "pay at delivery", "cod",
    "paiement a la livraison", "payer a la livraison", "a la livraison",
    "الدفع عند الاستلام", "الدفع عند التوصيل",
    "תשלום במזומן", "תשלום בעת המסירה", "מזומן לשליח",
)

CANCEL_KEYWORDS = (
    "cancel", "cancel order", "never mind", "forget it",
    "annuler", "annule", "laisse tomber",
    "الغاء", "إلغاء", "الغي",
    "בטל", "ביטול", "לבטל",
)


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    normalized = normalize_text(text)
    if not normalized:
        return False
    for keyword in keywords:
        key = normalize_text(keyword)
        # מילות מפתח קצרות (למשל "cod") — רק כמילה שלמה
        if len(key) <= 4:
            if re.search(rf"(?<!\w){re.escape(key)}(?!\w)", normalized):
                return True
        elif key in normalized:
            return True
    return False


class KeywordIntentDetector:
    """Default multilingual keyword detector"""

    def __init__(
        self,
        purchase_keywords: Iterable[str] = PURCHASE_KEYWORDS,
        reply_keywords: Iterable[str] = REPLY_ORDER_KEYWORDS,
        payment_keywords: Iterable[str] = PAYMENT_CLAIM_KEYWORDS,
        cod_keywords: Iterable[str] = COD_KEYWORDS,
        cancel_keywords: Iterable[str] = CANCEL_KEYWORDS,
    ) -> None:
        self.purchase_keywords = tuple(purchase_keywords)
        self.reply_keywords = tuple(reply_keywords)
        self.payment_keywords = tuple(payment_keywords)
        self.cod_keywords = tuple(cod_keywords)
        self.cancel_keywords = tuple(cancel_keywords)

    def is_purchase_intent(self, text: str) -> bool:
        return _contains_any(text, self.purchase_keywords)

    def reply_offers_order(self, reply: str) -> bool:
        return _contains_any(reply, self.reply_keywords)

    def is_payment_claim(self, text: str) -> bool:
        return _contains_any(text, self.payment_keywords)

    def is_cash_on_delivery_request(self, text: str) -> bool:
        return _contains_any(text, self.cod_keywords)

    def is_cancellation(self, text: str) -> bool:
        normalized = normalize_text(text)
        # "cancel" באמצע משפט ארוך הוא לרוב שאלה, לא בקשה
        if len(normalized.split()) > 6:
            return False
        return _contains_any(normalized, self.cancel_keywords)
