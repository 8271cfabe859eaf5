"""Default categories, rules and label names seeded for new users."""

from emailcat.schemas.classification import REVIEW, RuleField, RuleType

# code -> (display name, description)
DEFAULT_CATEGORIES: dict[str, tuple[str, str]] = {
    "INVOICE": ("Rechnung", "Rechnungen, Zahlungsaufforderungen, Quittungen"),
    "INQUIRY": ("Anfrage", "Kundenanfragen, Informationsanfragen, Angebote"),
    "DOCUMENT_APPROVAL": ("Dokumenten Freigabe", "Google Sheets, Docs, Freigaben, Genehmigungen"),
    "APPOINTMENT": ("Termin", "Terminbestätigungen, Einladungen, Kalenderereignisse"),
    "CUSTOMER": ("Kunde", "Nachrichten von bestehenden Kunden"),
    "LEAD": ("Lead", "Potenzielle Kunden, Anfragen, Vertrieb"),
    "SUPPORT": ("Support", "Support-Anfragen, Tickets, Hilfe-Anfragen"),
    "ORDER": ("Bestellung", "Bestellbestätigungen, Lieferungen, Versand"),
    "NEWSLETTER": ("Newsletter", "Newsletter, Marketing-E-Mails, Abonnements"),
    "PERSONAL": ("Privat", "Persönliche E-Mails, Freunde, Familie"),
    "TODO": ("ToDo", "Aufgaben, Action Items, Handlungsbedarf"),
    "SPAM_SUSPECT": ("Spam-Verdacht", "Verdächtige E-Mails, potentieller Spam"),
    REVIEW: ("Prüfen", "Unsichere Klassifizierung, manuelle Prüfung erforderlich"),
}

# Folder/label names used when no explicit label mapping exists.
# Created at the mailbox root; a connection may add a folder_prefix.
DEFAULT_LABEL_NAMES: dict[str, str] = {
    "INVOICE": "Rechnung",
    "INQUIRY": "Anfrage",
    "DOCUMENT_APPROVAL": "Freigabe",
    "ORDER": "Bestellung",
    "APPOINTMENT": "Termin",
    "CUSTOMER": "Kunde",
    "LEAD": "Lead",
    "SUPPORT": "Support",
    "NEWSLETTER": "Newsletter",
    "PERSONAL": "Privat",
    "TODO": "ToDo",
    "SPAM_SUSPECT": "Spam-Verdacht",
    REVIEW: "Prüfen",
}

_K, _R, _S = RuleType.KEYWORD, RuleType.REGEX, RuleType.SENDER
_SUBJ, _FROM, _BODY = RuleField.SUBJECT, RuleField.FROM, RuleField.BODY

# (category code, name, type, field, pattern, priority, confidence)
DEFAULT_RULES: list[tuple[str, str, RuleType, RuleField, str, int, float]] = [
    ("INVOICE", "Rechnung im Betreff", _K, _SUBJ, "rechnung", 100, 0.90),
    ("INVOICE", "Invoice in Subject", _K, _SUBJ, "invoice", 100, 0.90),
    ("INVOICE", "Zahlungsaufforderung", _K, _SUBJ, "zahlungsaufforderung", 95, 0.85),
    ("INVOICE", "Quittung/Receipt", _R, _SUBJ, "(quittung|receipt|beleg)", 90, 0.85),
    ("INQUIRY", "Anfrage im Betreff", _K, _SUBJ, "anfrage", 100, 0.90),
    ("INQUIRY", "Inquiry in Subject", _K, _SUBJ, "inquiry", 100, 0.90),
    ("INQUIRY", "Angebot angefordert", _R, _SUBJ, "(angebot|quotation|quote|preisanfrage)", 95, 0.85),
    ("INQUIRY", "Kontaktformular", _R, _SUBJ, "(kontaktformular|contact form|neue nachricht)", 90, 0.85),
    ("DOCUMENT_APPROVAL", "Google Sheets Freigabe", _R, _SUBJ, "(hat.*freigegeben|shared.*with you|zugriff.*gewährt)", 100, 0.95),
    ("DOCUMENT_APPROVAL", "Google Drive Einladung", _S, _FROM, "@google.com", 80, 0.70),
    ("DOCUMENT_APPROVAL", "Microsoft SharePoint", _R, _SUBJ, "(sharepoint|onedrive).*(freigabe|shared|access)", 95, 0.90),
    ("DOCUMENT_APPROVAL", "Dropbox Freigabe", _R, _FROM, "(dropbox|no-reply@dropbox)", 90, 0.85),
    ("DOCUMENT_APPROVAL", "Dokument zur Genehmigung", _R, _SUBJ, "(zur genehmigung|approval|freigabe erteilen)", 95, 0.90),
    ("ORDER", "Bestellbestätigung", _R, _SUBJ, "(bestellbestätigung|order confirmation|ihre bestellung)", 100, 0.95),
    ("ORDER", "Versandbestätigung", _R, _SUBJ, "(versand|shipped|auf dem weg|tracking|sendungsverfolgung)", 95, 0.90),
    ("ORDER", "Lieferung", _R, _SUBJ, "(lieferung|delivery|paket|package)", 90, 0.85),
    ("APPOINTMENT", "Terminbestätigung", _K, _SUBJ, "terminbestätigung", 100, 0.90),
    ("APPOINTMENT", "Meeting Invitation", _R, _SUBJ, "(meeting|besprechung|termin).*(einladung|invitation)", 95, 0.85),
    ("APPOINTMENT", "Calendar Event", _K, _SUBJ, "calendar event", 90, 0.85),
    ("APPOINTMENT", "Zoom/Teams Meeting", _R, _SUBJ, "(zoom|teams|webex|google meet).*(meeting|besprechung)", 95, 0.90),
    ("NEWSLETTER", "Newsletter im Betreff", _K, _SUBJ, "newsletter", 100, 0.95),
    ("NEWSLETTER", "Abbestellen Link", _R, _BODY, "(abmelden|unsubscribe|abbestellen)", 80, 0.75),
    ("NEWSLETTER", "Noreply Sender", _R, _FROM, "(noreply|no-reply|newsletter)@", 70, 0.70),
    ("SUPPORT", "Support Ticket", _R, _SUBJ, "(ticket|support|hilfe|help).*(#|nr|nummer)", 100, 0.90),
    ("SUPPORT", "Support Sender", _R, _FROM, "(support|helpdesk|service)@", 85, 0.80),
    ("TODO", "Action Required", _R, _SUBJ, "(action required|handlungsbedarf|dringend)", 100, 0.85),
    ("TODO", "Please Review", _R, _SUBJ, "(bitte prüfen|please review|zur durchsicht)", 90, 0.80),
    ("TODO", "Feedback erbeten", _R, _SUBJ, "(feedback|rückmeldung|antwort erbeten)", 85, 0.80),
    ("SPAM_SUSPECT", "Lottery/Prize", _R, _SUBJ, "(lottery|gewinn|prize|congratulations.*won)", 100, 0.90),
    ("SPAM_SUSPECT", "Urgent Money", _R, _SUBJ, "(urgent.*transfer|dringend.*überweisung|inheritance)", 95, 0.85),
]
