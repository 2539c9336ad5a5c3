from html import escape

import config

COMPANY_NAME = config.MSG91_SENDER_NAME
SUPPORT_EMAIL = config.MSG91_SENDER_EMAIL or "support@example.com"
PRIMARY_COLOR = "#4CAF50"


def _layout(title: str, body_html: str) -> str:
    """Wrap content in the shared HTML email layout."""
    return f"""
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{escape(title)}</title>
</head>
<body style="margin:0; padding:0; font-family: Arial, Helvetica, sans-serif; background-color: #f5f5f5; color: #333;">
  <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="background-color: #f5f5f5; padding: 24px 16px;">
    <tr>
      <td align="center">
        <table role="presentation" width="600" cellspacing="0" cellpadding="0" style="max-width: 600px; background: #ffffff; border-radius: 8px; overflow: hidden;">
          <tr>
            <td style="padding: 32px 40px;">
              {body_html}
            </td>
          </tr>
          <tr>
            <td style="padding: 20px 40px; background: #fafafa; border-top: 1px solid #eee; font-size: 12px; color: #666;">
              <strong>{escape(COMPANY_NAME)}</strong><br/>
              <a href="mailto:{SUPPORT_EMAIL}" style="color: {PRIMARY_COLOR}; text-decoration: none;">{SUPPORT_EMAIL}</a>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>
"""


def otp_email(otp: str, name: str = None) -> str:
    body = f"""
      <h2 style="margin: 0 0 16px;">Email Verification</h2>
      <p>Hello {escape(name or "User")},</p>
      <p>Your verification code is:</p>
      <div style="background: #f4f4f4; padding: 20px; text-align: center; margin: 20px 0; border-radius: 5px;">
        <span style="font-size: 32px; font-weight: bold; color: {PRIMARY_COLOR}; letter-spacing: 5px;">{escape(otp)}</span>
      </div>
      <p>This code will expire in {config.OTP_EXPIRE_MINUTES} minutes.</p>
      <p>If you didn't request this code, please ignore this email.</p>
    """
    return _layout("Your verification code", body)


def password_reset_email(reset_url: str, name: str = None) -> str:
    body = f"""
      <h2 style="margin: 0 0 16px;">Reset your password</h2>
      <p>Hello {escape(name or "User")},</p>
      <p>Follow the link below to choose a new password. It is valid for {config.PASSWORD_RESET_EXPIRE_MINUTES} minutes.</p>
      <p><a href="{escape(reset_url)}" style="background: {PRIMARY_COLOR}; color: #fff; padding: 12px 30px; text-decoration: none; border-radius: 5px; display: inline-block;">Reset password</a></p>
    """
    return _layout("Reset your password", body)


def welcome_email(first_name: str) -> str:
    body = f"""
      <h1 style="margin: 0 0 16px;">Welcome to {escape(COMPANY_NAME)}!</h1>
      <p>We're excited to have you onboard, {escape(first_name or "User")}!</p>
      <p>Fast delivery to your doorstep, competitive prices and deals on every order.</p>
      <p style="text-align: center;">
        <a href="{escape(config.FRONTEND_URL)}" style="background: {PRIMARY_COLOR}; color: #fff; padding: 12px 30px; text-decoration: none; border-radius: 5px; display: inline-block;">Start Shopping</a>
      </p>
    """
    return _layout("Welcome", body)


def order_confirmation_email(order: dict, first_name: str) -> str:
    rows = "".join(
        f"""
        <tr><td style="border-bottom: 1px solid #ddd; padding: 10px 0;">
          <strong>{escape(str(item.get("title") or "Product"))}</strong><br>
          Quantity: {item.get("quantity")} &times; &#8377;{item.get("price")}
        </td></tr>"""
        for item in order.get("order_items", [])
    )
    scheduled = order.get("scheduled_delivery_date") or "2-3 days"
    body = f"""
      <div style="background: {PRIMARY_COLOR}; color: #fff; padding: 20px; text-align: center;">
        <h2 style="margin: 0;">Order Confirmed!</h2>
        <p style="margin: 8px 0 0;">Order #{order.get("_id")}</p>
      </div>
      <p>Hello {escape(first_name or "Customer")},</p>
      <p>Thank you for your order! We've received it and will process it shortly.</p>
      <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="background: #f9f9f9; padding: 20px;">
        {rows}
      </table>
      <p style="font-size: 18px; font-weight: bold; text-align: right;">Total: &#8377;{order.get("total_price_after_discount")}</p>
      <p>Estimated Delivery: {escape(str(scheduled))}</p>
    """
    return _layout("Order confirmed", body)


def order_status_email(order: dict, status: str, first_name: str) -> str:
    delivery = ""
    if status == "Out for Delivery":
        person = order.get("delivery_person") or {}
        delivery = f"""
      <p>Delivery Person: {escape(str(person.get("name", "")))}</p>
      <p>Contact: {escape(str(person.get("phone", "")))}</p>"""
    body = f"""
      <h2 style="margin: 0 0 16px;">Order {escape(status)}</h2>
      <p>Order #{order.get("_id")}</p>
      <p>Hello {escape(first_name or "Customer")},</p>
      <p>Your order status has been updated to: <strong>{escape(status)}</strong></p>
      {delivery}
      <p>Track your order in real-time in the app.</p>
    """
    return _layout(f"Order {status}", body)
