from django.core.exceptions import ValidationError
from django.test import TestCase

from apps.core.academics.models import SchoolClass
from apps.core.schools.models import School
from apps.core.students.models import Student


class StudentModelTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Student School')
        self.school_class = SchoolClass.objects.create(school=self.school, name='Grade 3')

    def test_delete_archives_student(self):
        student = Student.objects.create(
            school=self.school,
            admission_number='ADM-1',
            first_name='Asha',
            last_name='Rao',
            current_class=self.school_class,
        )
        student.delete()
        student.refresh_from_db()
        self.assertTrue(student.is_archived)
        self.assertFalse(student.is_active)
        self.assertEqual(student.status, Student.STATUS_ALUMNI)
        self.assertEqual(student.full_name, 'Asha Rao')

    def test_class_must_belong_to_school(self):
        other_school = School.objects.create(name='Elsewhere')
        other_class = SchoolClass.objects.create(school=other_school, name='Grade 3')
        student = Student(
            school=self.school,
            admission_number='ADM-2',
            first_name='Ben',
            current_class=other_class,
        )
        with self.assertRaises(ValidationError):
            student.full_clean()
