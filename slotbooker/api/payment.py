from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from slotbooker.providers.payment_bridge import CONFIRM_PAGE_PATH

router = APIRouter(tags=["payment"])

STRIPE_JS_URL = "https://js.stripe.com/v3/"

# Loaded by the payment bridge's headless browser. The page only exposes the
# SDK; keys and the client secret are passed in by the bridge at call time.
CONFIRM_PAGE = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Payment confirmation</title>
  <script src="{STRIPE_JS_URL}"></script>
</head>
<body>
<script>
  window.paymentReady = false;

  window.confirmPayment = async function (publishableKey, account, clientSecret, sourceId) {{
    const stripe = Stripe(publishableKey, {{ stripeAccount: account }});
    return stripe.confirmCardPayment(clientSecret, {{ payment_method: sourceId }});
  }};

  function markReady() {{
    window.paymentReady = typeof Stripe === "function";
  }}

  if (document.readyState === "complete") {{
    markReady();
  }} else {{
    window.addEventListener("load", markReady);
  }}
</script>
</body>
</html>
"""


@router.get(CONFIRM_PAGE_PATH, response_class=HTMLResponse, include_in_schema=False)
async def confirm_page() -> HTMLResponse:
    return HTMLResponse(content=CONFIRM_PAGE)
