from django.db import models

from apps.core.schools.models import School
from apps.core.utils.managers import SchoolManager


class SchoolClass(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='classes',
    )
    objects = SchoolManager()

    name = models.CharField(max_length=50)  # e.g. 1st, 10th
    code = models.CharField(max_length=20, blank=True)
    display_order = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['display_order', 'name', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'name'],
                name='unique_class_name_per_school',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'is_active'], name='class_school_active_idx'),
        ]

    def delete(self, *args, **kwargs):
        # Fee structures and students keep pointing at the class; only hide it.
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.name
