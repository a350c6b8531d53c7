# Delivery list
ORDER_CARD = "div.ez-1h5x3dy"
ORDER_TICKET = "div.ez-7crqac"
ORDER_TIME = "span.c-AsWAM[data-delivery-time-id]"
ORDER_STATUS_CONTAINER = "div[data-testid='delivery-status-text']"
STATUS_CHIP = "span.MuiChip-label"
TODAY_HEADING = "Today"
UPCOMING_HEADING = "Upcoming"
DELIVERIES_LINK = "a[href='/deliveries'], a[href='/deliveries/']"
LIST_VIEW_URL_FRAGMENT = "/deliveries"

# Page states
EMPTY_STATE_TEXT = "no deliveries available"
EXPIRED_LINK_HEADING = "h3:text-is('Expired Link')"
EXPIRED_LINK_TEXT = "delivering an order?"
REAUTH_PHONE_INPUT = "input[type='text'][placeholder='Enter your phone number']"
REAUTH_SUBMIT = "button[type='submit']"

# Order detail actions
ON_MY_WAY_CONTAINER_BUTTON = "div.ez-7xofcs button"
ON_MY_WAY_TEXT = "I'm on my way"
DELIVERY_DONE_TEXT = "Delivery is done"
CONFIRM_TEXT = "Confirm"

TICKET_PATTERN = r"#[A-Z0-9]{3}-[A-Z0-9]{3}"
