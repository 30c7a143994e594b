"""
Invitation email and RSVP page templates.

Placeholders are filled with str.format; callers escape values first.
"""

INVITATION_SUBJECT = "Invitation: {title} @ {when}"

INVITATION_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>{title}</title>
</head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; color: #1a1d23;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    <p>Hi {attendee_name},</p>
    <p><strong>{organizer_name}</strong> ({organizer_email}) invited you to an event.</p>
    {custom_message_block}
    <div style="background: #f5f6f8; border-radius: 8px; padding: 16px; margin: 16px 0;">
      <h2 style="margin: 0 0 8px 0;">{title}</h2>
      <p style="margin: 4px 0;">&#128197; {when}</p>
      <p style="margin: 4px 0;">&#128336; {time_range}</p>
      {location_block}
      {description_block}
    </div>
    <p>Will you attend?</p>
    <p>
      <a href="{accept_link}" style="background: #10B981; color: white; padding: 10px 20px; border-radius: 6px; text-decoration: none;">Yes</a>
      <a href="{tentative_link}" style="background: #F59E0B; color: white; padding: 10px 20px; border-radius: 6px; text-decoration: none;">Maybe</a>
      <a href="{decline_link}" style="background: #EF4444; color: white; padding: 10px 20px; border-radius: 6px; text-decoration: none;">No</a>
    </p>
  </div>
</body>
</html>
"""

INVITATION_TEXT = """Hi {attendee_name},

{organizer_name} ({organizer_email}) invited you to an event.
{custom_message_text}
{title}
When: {when}
Time: {time_range}
{location_text}{description_text}
Yes: {accept_link}
Maybe: {tentative_link}
No: {decline_link}
"""

RSVP_CONFIRMATION_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>{heading} - {title}</title>
</head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; text-align: center; padding: 40px;">
  <h1 style="color: {color};">{heading}</h1>
  <p>{message}</p>
  <p><strong>{title}</strong></p>
  <p style="color: #5c616b;">Responding as {attendee_email}</p>
</body>
</html>
"""

RSVP_RESPONSES = {
    "accepted": {"heading": "Invitation Accepted", "message": "You have accepted this invitation.", "color": "#10B981"},
    "declined": {"heading": "Invitation Declined", "message": "You have declined this invitation.", "color": "#EF4444"},
    "tentative": {
        "heading": "Invitation Tentative",
        "message": "You have marked this invitation as tentative.",
        "color": "#F59E0B",
    },
}
