from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SiteSelectors:
    """
    The retail site is a live web app; selectors change over time.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Login
    identity_input: str = "#ap_email, input[name='email']"
    identity_continue: str = "#continue, input#continue"
    password_input: str = "#ap_password, input[name='password']"
    sign_in_submit: str = "#signInSubmit"
    # Amazon re-shows the password form with this alert when credentials are rejected.
    login_error_box: str = "#auth-error-message-box, #auth-warning-message-box"

    # Second factor (TOTP authenticator app)
    otp_input: str = "#auth-mfa-otpcode, input[name='otpCode']"
    otp_remember_device: str = "#auth-mfa-remember-device"
    otp_submit: str = "#auth-signin-button"

    # Image challenge, either inline on the sign-in form or as a standalone "type the characters" page.
    captcha_image: str = "#auth-captcha-image, form[action*='validateCaptcha'] img"
    captcha_input: str = "#auth-captcha-guess, #captchacharacters"
    captcha_submit: str = "#signInSubmit, form[action*='validateCaptcha'] button[type='submit']"

    # Authenticated chrome
    account_greeting: str = "#nav-link-accountList-nav-line-1"
    sign_out_link: str = "#nav-item-signout"
    signed_out_greeting_text: str = "sign in"
    sign_in_url_fragment: str = "/ap/signin"

    # Search listing
    listing_container: str = ".s-main-slot"
    listing_entry: str = ".s-main-slot .s-result-item[data-asin]"
    entry_title: str = "h2 a span, h2 span"
    entry_price: str = ".a-price .a-offscreen"
    entry_price_fallback: str = ".a-color-price, .a-color-base"
    entry_shipping: str = "[data-cy='delivery-recipe'], .a-color-price, .s-align-children-center"
    entry_link: str = "h2 a, a.a-link-normal.s-no-outline"

    # Purchase flow
    add_to_cart: str = "#add-to-cart-button"
    nav_cart: str = "#nav-cart"
    proceed_to_checkout: str = "#sc-buy-box-ptc-button input, .sc-buy-box-pt, input[name='proceedToRetailCheckout']"
    place_order: str = "input[name='placeYourOrder1'], #submitOrderButtonId input, #placeYourOrder"
    order_confirmation: str = "#checkoutThankYouHeader, #widget-purchaseConfirmationStatus, #widget-purchaseSummary"
