from flask_wtf import FlaskForm
from wtforms import IntegerField, SelectField, StringField, SubmitField
from wtforms.validators import InputRequired, Length, NumberRange, Optional

from ..services.background import ALIGNMENTS, CLASSES


class DemoJobForm(FlaskForm):
    submit = SubmitField("Start demo job")


class CharacterBriefForm(FlaskForm):
    name = StringField("Character name", validators=[InputRequired(), Length(max=120)])
    class_type = SelectField(
        "Class",
        choices=[(value, value) for value in CLASSES],
        validators=[InputRequired()],
    )
    race = StringField("Race", validators=[Optional(), Length(max=60)])
    level = IntegerField(
        "Level",
        default=1,
        validators=[InputRequired(), NumberRange(min=1, max=20)],
    )
    alignment = SelectField(
        "Alignment",
        choices=[(value, value) for value in ALIGNMENTS],
        default="True Neutral",
        validators=[InputRequired()],
    )
    submit = SubmitField("Generate background")

    def brief_payload(self) -> dict:
        return {
            "name": self.name.data.strip(),
            "class_type": self.class_type.data,
            "race": (self.race.data or "").strip() or None,
            "level": self.level.data,
            "alignment": self.alignment.data,
        }


class PersonalityDetailsForm(FlaskForm):
    submit = SubmitField("Generate ideals, bonds and flaws")
