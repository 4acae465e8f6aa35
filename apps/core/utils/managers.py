from django.db import models


class SchoolQuerySet(models.QuerySet):
    def for_school(self, school):
        if isinstance(school, models.Model):
            return self.filter(school=school)
        return self.filter(school_id=school)

    def for_academic_year(self, academic_year):
        if not academic_year:
            return self
        return self.filter(academic_year=academic_year)


class SchoolManager(models.Manager.from_queryset(SchoolQuerySet)):
    pass
