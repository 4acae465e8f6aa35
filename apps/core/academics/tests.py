from django.db import IntegrityError
from django.test import TestCase

from apps.core.academics.models import SchoolClass
from apps.core.schools.models import School


class SchoolClassTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Class School')
        self.other_school = School.objects.create(name='Other School')

    def test_delete_deactivates_class(self):
        school_class = SchoolClass.objects.create(school=self.school, name='Grade 5')
        school_class.delete()
        school_class.refresh_from_db()
        self.assertFalse(school_class.is_active)

    def test_class_name_unique_per_school(self):
        SchoolClass.objects.create(school=self.school, name='Grade 6')
        SchoolClass.objects.create(school=self.other_school, name='Grade 6')
        with self.assertRaises(IntegrityError):
            SchoolClass.objects.create(school=self.school, name='Grade 6')

    def test_for_school_accepts_instance_or_id(self):
        SchoolClass.objects.create(school=self.school, name='Grade 7')
        SchoolClass.objects.create(school=self.other_school, name='Grade 8')
        self.assertEqual(SchoolClass.objects.for_school(self.school).count(), 1)
        self.assertEqual(SchoolClass.objects.for_school(self.other_school.id).get().name, 'Grade 8')
